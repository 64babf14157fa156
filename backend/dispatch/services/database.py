"""
SQLite incident store for WebSlinger Dispatch.
Provides persistent storage plus an in-process live change feed that
websocket sessions subscribe to.
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Set

import aiosqlite

from dispatch.config import settings
from dispatch.models.schemas import Incident, IncidentChange, IncidentCreate, IncidentStatus, Identity

logger = logging.getLogger(__name__)

# Singleton instance
_store_instance: Optional["IncidentStore"] = None


class IncidentPersistenceError(RuntimeError):
    """An incident write was rejected by the store."""


class IncidentStore:
    """Async SQLite incident store with a change subscription."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.database_path
        self._db: Optional[aiosqlite.Connection] = None
        self._subscribers: Set[asyncio.Queue] = set()

    async def initialize(self):
        """Create database directory and tables."""
        if self.db_path != ":memory:":
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._create_tables()
        logger.info(f"SQLite incident store initialized at {self.db_path}")

    async def _create_tables(self):
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS incidents (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                incident_type TEXT NOT NULL DEFAULT 'other',
                description TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                location_name TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                reporter_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_incidents_created_at ON incidents(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents(status);
            CREATE INDEX IF NOT EXISTS idx_incidents_user_id ON incidents(user_id);
        """)
        await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    # ── Change feed ───────────────────────────────────────

    def subscribe(self) -> asyncio.Queue:
        """Register for insert/update/delete pushes."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        logger.debug(f"Incident feed subscriber added ({len(self._subscribers)} total)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    def _publish(self, kind: str, incident: Incident):
        change = IncidentChange(kind=kind, incident=incident)
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    # ── Incident CRUD ─────────────────────────────────────

    async def insert(self, report: IncidentCreate, identity: Identity) -> Incident:
        """Persist a new incident with status=active."""
        if self._db is None:
            raise IncidentPersistenceError("Incident store is not initialized")

        now = datetime.now(timezone.utc)
        incident = Incident(
            id=str(uuid.uuid4()),
            user_id=identity.user_id,
            incident_type=report.incident_type,
            description=report.description,
            latitude=report.latitude,
            longitude=report.longitude,
            location_name=report.location_name,
            status=IncidentStatus.ACTIVE,
            reporter_name=identity.reporter_name,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._db.execute(
                """INSERT INTO incidents
                   (id, user_id, incident_type, description, latitude, longitude,
                    location_name, status, reporter_name, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    incident.id,
                    incident.user_id,
                    incident.incident_type.value,
                    incident.description,
                    incident.latitude,
                    incident.longitude,
                    incident.location_name,
                    incident.status.value,
                    incident.reporter_name,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            logger.error(f"SQLite insert incident error: {e}")
            raise IncidentPersistenceError(f"Incident insert rejected: {e}") from e

        logger.info(f"Incident {incident.id} created ({incident.incident_type.value}) by {incident.user_id}")
        self._publish("insert", incident)
        return incident

    async def get(self, incident_id: str) -> Optional[Incident]:
        async with self._db.execute(
            "SELECT * FROM incidents WHERE id = ?", (incident_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_incident(row)
        return None

    async def list_incidents(self, limit: Optional[int] = None) -> List[Incident]:
        """All incidents, most recent first."""
        query = "SELECT * FROM incidents ORDER BY created_at DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        rows = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                rows.append(self._row_to_incident(row))
        return rows

    async def update_status(self, incident_id: str, status: IncidentStatus) -> Optional[Incident]:
        """Apply a status transition. Returns None when the incident does not exist."""
        existing = await self.get(incident_id)
        if existing is None:
            return None

        now = datetime.now(timezone.utc)
        try:
            await self._db.execute(
                "UPDATE incidents SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, now.isoformat(), incident_id),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            logger.error(f"SQLite update_status error: {e}")
            raise IncidentPersistenceError(f"Status update rejected: {e}") from e

        updated = existing.model_copy(update={"status": status, "updated_at": now})
        logger.info(f"Incident {incident_id} status {existing.status.value} -> {status.value}")
        self._publish("update", updated)
        return updated

    async def count_incidents(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM incidents") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _row_to_incident(row) -> Incident:
        d = dict(row)
        for key in ("created_at", "updated_at"):
            if isinstance(d.get(key), str):
                d[key] = datetime.fromisoformat(d[key])
        return Incident(**d)

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except aiosqlite.Error:
            return False


def get_incident_store() -> IncidentStore:
    """Get or create the singleton IncidentStore."""
    global _store_instance
    if _store_instance is None:
        _store_instance = IncidentStore()
    return _store_instance
