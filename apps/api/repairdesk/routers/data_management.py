"""Administrative data management endpoints (ADMIN only)."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from repairdesk.core.deps import Actor, get_blob_storage, get_db, require_admin
from repairdesk.services import data_purge_service
from repairdesk.services.storage_service import BlobStorage

router = APIRouter(prefix="/data-management", tags=["Data Management"])


class PurgeRequest(BaseModel):
    older_than_days: int = Field(default=365, ge=0)
    include_notifications: bool = True
    dry_run: bool = False


@router.post("/purge")
def purge_closed_tickets(
    data: PurgeRequest,
    db: Session = Depends(get_db),
    storage: BlobStorage | None = Depends(get_blob_storage),
    actor: Actor = Depends(require_admin),
):
    """Hard-delete closed tickets (and old delivery logs) past the cutoff."""
    try:
        result = data_purge_service.purge_closed_tickets(
            db,
            older_than_days=data.older_than_days,
            include_notifications=data.include_notifications,
            dry_run=data.dry_run,
            storage=storage,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "tickets_deleted": result.tickets_deleted,
        "notifications_deleted": result.notifications_deleted,
        "dry_run": result.dry_run,
    }
