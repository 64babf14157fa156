"""
Tests for the SQLite incident store and its change feed.
"""

import asyncio

import pytest

from dispatch.models.schemas import IncidentCreate, IncidentStatus, IncidentType
from dispatch.services.database import IncidentPersistenceError, IncidentStore


def report(description="Car on fire", incident_type=IncidentType.FIRE) -> IncidentCreate:
    return IncidentCreate(
        incident_type=incident_type,
        description=description,
        latitude=32.7357,
        longitude=-97.1081,
        location_name="Cooper Street",
    )


class TestIncidentStore:

    async def test_insert_sets_identity_and_status(self, store, citizen):
        incident = await store.insert(report(), citizen)

        assert incident.status == IncidentStatus.ACTIVE
        assert incident.user_id == "user-1"
        assert incident.reporter_name == "Jane"
        assert incident.created_at == incident.updated_at

        fetched = await store.get(incident.id)
        assert fetched == incident

    async def test_anonymous_reporter_name(self, store):
        from dispatch.models.schemas import Identity

        incident = await store.insert(report(), Identity(user_id="user-9"))
        assert incident.reporter_name == "Anonymous"

    async def test_list_most_recent_first(self, store, citizen):
        first = await store.insert(report("first"), citizen)
        await asyncio.sleep(0.01)
        second = await store.insert(report("second"), citizen)

        incidents = await store.list_incidents()

        assert [i.id for i in incidents] == [second.id, first.id]
        assert [i.id for i in await store.list_incidents(limit=1)] == [second.id]
        assert await store.count_incidents() == 2

    async def test_update_status(self, store, citizen):
        incident = await store.insert(report(), citizen)

        updated = await store.update_status(incident.id, IncidentStatus.RESPONDING)

        assert updated.status == IncidentStatus.RESPONDING
        assert updated.updated_at >= incident.updated_at
        assert (await store.get(incident.id)).status == IncidentStatus.RESPONDING

    async def test_update_unknown_incident(self, store):
        assert await store.update_status("missing", IncidentStatus.RESOLVED) is None

    async def test_get_unknown_incident(self, store):
        assert await store.get("missing") is None

    async def test_insert_before_initialize_fails(self, citizen):
        uninitialized = IncidentStore(":memory:")
        with pytest.raises(IncidentPersistenceError):
            await uninitialized.insert(report(), citizen)

    async def test_health_check(self, store):
        assert await store.health_check() is True
        await store.close()
        assert await store.health_check() is False

    async def test_file_backed_store_persists(self, tmp_path, citizen):
        path = str(tmp_path / "data" / "dispatch.db")
        first = IncidentStore(path)
        await first.initialize()
        incident = await first.insert(report(), citizen)
        await first.close()

        second = IncidentStore(path)
        await second.initialize()
        try:
            assert (await second.get(incident.id)).description == "Car on fire"
        finally:
            await second.close()


class TestChangeFeed:

    async def test_insert_and_update_are_pushed(self, store, citizen):
        queue = store.subscribe()

        incident = await store.insert(report(), citizen)
        await store.update_status(incident.id, IncidentStatus.RESOLVED)

        inserted = queue.get_nowait()
        updated = queue.get_nowait()
        assert (inserted.kind, inserted.incident.id) == ("insert", incident.id)
        assert (updated.kind, updated.incident.status) == ("update", IncidentStatus.RESOLVED)

    async def test_unsubscribe_stops_pushes(self, store, citizen):
        queue = store.subscribe()
        store.unsubscribe(queue)

        await store.insert(report(), citizen)

        assert queue.empty()

    async def test_every_subscriber_receives_change(self, store, citizen):
        queues = [store.subscribe(), store.subscribe()]
        await store.insert(report(), citizen)
        assert all(q.qsize() == 1 for q in queues)
