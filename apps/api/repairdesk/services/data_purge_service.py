"""Retention purge for closed repair tickets and LINE delivery logs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from repairdesk.db.enums import TERMINAL_STATUSES
from repairdesk.db.models import LineNotification, RepairTicket
from repairdesk.services.storage_service import BlobStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    tickets_deleted: int
    notifications_deleted: int
    dry_run: bool = False


def _delete_blobs(storage: BlobStorage, ticket: RepairTicket) -> None:
    for attachment in ticket.attachments:
        if not attachment.storage_key:
            continue
        try:
            storage.delete_file(attachment.storage_key)
        except Exception:
            logger.exception("Failed to delete attachment %s", attachment.storage_key)


def purge_closed_tickets(
    db: Session,
    *,
    older_than_days: int,
    include_notifications: bool = True,
    dry_run: bool = False,
    now: datetime | None = None,
    storage: BlobStorage | None = None,
) -> PurgeResult:
    """
    Hard-delete COMPLETED/CANCELLED tickets last touched before the cutoff.

    Assignees, history and attachments go with their ticket. Delivery log rows
    older than the cutoff are removed too unless ``include_notifications`` is off.
    Stored attachment files are deleted from ``storage`` when one is given;
    a failed blob delete is logged and does not stop the purge.
    """
    if older_than_days < 0:
        raise ValueError("older_than_days must be >= 0")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)

    tickets = db.execute(
        select(RepairTicket).where(
            RepairTicket.status.in_(TERMINAL_STATUSES),
            RepairTicket.updated_at < cutoff,
        )
    ).scalars().all()
    stale_logs = []
    if include_notifications:
        stale_logs = db.execute(
            select(LineNotification.id).where(LineNotification.created_at < cutoff)
        ).scalars().all()

    if dry_run:
        return PurgeResult(len(tickets), len(stale_logs), dry_run=True)

    for ticket in tickets:
        if storage is not None:
            _delete_blobs(storage, ticket)
        db.delete(ticket)
    if stale_logs:
        db.execute(delete(LineNotification).where(LineNotification.id.in_(stale_logs)))
    db.commit()

    logger.info(
        "Purged %s closed repair ticket(s) and %s notification log row(s) older than %s days",
        len(tickets),
        len(stale_logs),
        older_than_days,
    )
    return PurgeResult(len(tickets), len(stale_logs))
