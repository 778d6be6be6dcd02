"""FastAPI dependencies for database access, collaborators and caller identity."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from repairdesk.core.config import settings
from repairdesk.db.enums import STAFF_ROLES, Role
from repairdesk.db.session import SessionLocal
from repairdesk.services.line_api import LineMessagingClient, build_line_client
from repairdesk.services.storage_service import BlobStorage


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_line_client() -> LineMessagingClient:
    """Process-wide LINE client, built once from settings."""
    return build_line_client()


def get_blob_storage() -> BlobStorage | None:
    """Attachment storage, or None when no bucket is configured."""
    if not settings.S3_BUCKET:
        return None
    return BlobStorage()


@dataclass(frozen=True)
class Actor:
    """Caller identity as asserted by the upstream gateway."""

    user_id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def get_current_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Actor:
    """
    Read the already-authenticated caller from gateway headers.

    Raises:
        HTTPException 401: headers missing or malformed
    """
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")
    role = x_user_role.strip().upper()
    if not Role.has_value(role):
        raise HTTPException(status_code=401, detail="Invalid role")
    return Actor(user_id=user_id, role=Role(role))


def get_optional_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Actor | None:
    if not x_user_id:
        return None
    return get_current_actor(x_user_id, x_user_role)


def require_staff(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require IT or ADMIN role."""
    if not actor.is_staff:
        raise HTTPException(status_code=403, detail="IT staff only")
    return actor


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin only")
    return actor
