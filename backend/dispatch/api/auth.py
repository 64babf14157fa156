"""
Caller identity dependencies.
Authentication happens upstream; the auth provider forwards the signed-in
user as X-User-Id / X-User-Name / X-User-Role headers.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException

from dispatch.models.schemas import Identity, UserRole

logger = logging.getLogger(__name__)


def parse_role(value: Optional[str]) -> UserRole:
    try:
        return UserRole((value or UserRole.CITIZEN.value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown role header {value!r}, treating as citizen")
        return UserRole.CITIZEN


async def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Optional[Identity]:
    """Dependency returning the caller identity, or None when signed out."""
    if not x_user_id or not x_user_id.strip():
        return None
    return Identity(
        user_id=x_user_id.strip(),
        display_name=(x_user_name or "").strip() or None,
        role=parse_role(x_user_role),
    )


async def require_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    """Dependency to require a signed-in caller."""
    identity = await get_identity(x_user_id, x_user_name, x_user_role)
    if identity is None:
        raise HTTPException(status_code=401, detail="Sign in to submit a report")
    return identity


async def require_officer(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    """Dependency to require the officer role."""
    identity = await require_identity(x_user_id, x_user_name, x_user_role)
    if identity.role != UserRole.OFFICER:
        logger.warning(f"User {identity.user_id} attempted an officer-only action")
        raise HTTPException(status_code=403, detail="Only officers can update incident status")
    return identity
