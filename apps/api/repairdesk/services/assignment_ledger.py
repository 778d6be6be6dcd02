"""Append-only assignment/audit ledger for repair tickets.

Entries are written after the ticket change has committed. A ledger write
that fails is logged and dropped; it never undoes the ticket change.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from repairdesk.core.status_rules import classify_transition
from repairdesk.db.enums import AssignmentAction, RepairTicketStatus
from repairdesk.db.models import RepairAssignmentHistory

logger = logging.getLogger(__name__)


def _persist(db: Session, ticket_id: int, entries: list[RepairAssignmentHistory]) -> list[RepairAssignmentHistory]:
    if not entries:
        return []
    try:
        db.add_all(entries)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write assignment history for ticket %s", ticket_id)
        return []
    return entries


def record_assignment_delta(
    db: Session,
    *,
    ticket_id: int,
    previous_ids: Iterable[int],
    new_ids: Iterable[int],
    actor_id: int | None,
    note: str | None = None,
) -> list[RepairAssignmentHistory]:
    """One ASSIGN per added assignee, one UNASSIGN per removed one."""
    previous = set(previous_ids)
    current = set(new_ids)
    entries = [
        RepairAssignmentHistory(
            repair_ticket_id=ticket_id,
            action=AssignmentAction.ASSIGN,
            assigner_id=actor_id,
            assignee_id=user_id,
            note=note,
        )
        for user_id in sorted(current - previous)
    ]
    entries.extend(
        RepairAssignmentHistory(
            repair_ticket_id=ticket_id,
            action=AssignmentAction.UNASSIGN,
            assigner_id=actor_id,
            assignee_id=user_id,
        )
        for user_id in sorted(previous - current)
    )
    return _persist(db, ticket_id, entries)


def record_status_change(
    db: Session,
    *,
    ticket_id: int,
    from_status: RepairTicketStatus,
    to_status: RepairTicketStatus,
    actor_id: int | None,
    note: str | None = None,
) -> RepairAssignmentHistory | None:
    """Write exactly one ACCEPT, REJECT or STATUS_CHANGE entry."""
    action = classify_transition(from_status, to_status)
    entry = RepairAssignmentHistory(
        repair_ticket_id=ticket_id,
        action=action,
        assigner_id=actor_id,
        # accept/reject are the technician acting on their own assignment
        assignee_id=actor_id if action != AssignmentAction.STATUS_CHANGE else None,
        from_status=RepairTicketStatus(from_status).value,
        to_status=RepairTicketStatus(to_status).value,
        note=note,
    )
    written = _persist(db, ticket_id, [entry])
    return written[0] if written else None


def record_note(
    db: Session,
    *,
    ticket_id: int,
    action: AssignmentAction,
    actor_id: int | None,
    note: str,
) -> RepairAssignmentHistory | None:
    """Write a NOTE or MESSAGE_TO_REPORTER entry."""
    if action not in (AssignmentAction.NOTE, AssignmentAction.MESSAGE_TO_REPORTER):
        raise ValueError(f"{action.value} is not a note action")
    entry = RepairAssignmentHistory(
        repair_ticket_id=ticket_id,
        action=action,
        assigner_id=actor_id,
        note=note,
    )
    written = _persist(db, ticket_id, [entry])
    return written[0] if written else None


def list_history(db: Session, ticket_id: int) -> list[RepairAssignmentHistory]:
    return list(
        db.execute(
            select(RepairAssignmentHistory)
            .where(RepairAssignmentHistory.repair_ticket_id == ticket_id)
            .order_by(RepairAssignmentHistory.created_at, RepairAssignmentHistory.id)
        ).scalars()
    )
