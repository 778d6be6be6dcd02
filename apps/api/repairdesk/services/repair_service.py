"""Repair ticket workflow: create, update, cancel and read operations.

Write path for every mutation:
1. validate (status transition, assignees, attachments) before touching rows
2. apply the change and commit
3. append ledger entries (best effort)
4. send LINE notifications (best effort, awaited)
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from repairdesk.core.status_rules import ensure_transition, is_terminal
from repairdesk.core.structured_logging import build_log_context
from repairdesk.db.enums import (
    AssignmentAction,
    AttachmentKind,
    RepairTicketStatus,
    TechnicianNoticeKind,
    UrgencyLevel,
)
from repairdesk.db.models import (
    RepairAttachment,
    RepairTicket,
    RepairTicketAssignee,
    User,
)
from repairdesk.schemas.repairs import RepairTicketCreateCommand, RepairTicketUpdateCommand
from repairdesk.services import assignment_ledger, line_notification_service
from repairdesk.services.line_api import LineMessagingClient
from repairdesk.services.line_notification_service import NotificationResult
from repairdesk.services.repair_errors import (
    AttachmentValidationError,
    InvalidAssigneeError,
    RepairTicketNotFoundError,
    TicketCodeGenerationError,
    UnknownReporterError,
)
from repairdesk.services.storage_service import BlobStorage, StorageValidationError, validate_image
from repairdesk.services.ticket_code_service import generate_ticket_code

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 3
LINKING_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

# Fields copied verbatim from an update command when present
PATCHABLE_FIELDS = (
    "urgency",
    "problem_category",
    "problem_title",
    "problem_description",
    "location",
    "notes",
    "message_to_reporter",
    "scheduled_at",
    "estimated_completion_date",
)
NON_NULLABLE_FIELDS = {"urgency", "problem_category", "problem_title"}


@dataclass(frozen=True)
class IncomingFile:
    """An uploaded file as received at the API boundary."""

    filename: str
    content_type: str
    content: bytes


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ticket_query():
    return select(RepairTicket).options(
        selectinload(RepairTicket.assignees).selectinload(RepairTicketAssignee.user),
        selectinload(RepairTicket.attachments),
    )


# =============================================================================
# Reads
# =============================================================================


def get_ticket(db: Session, ticket_id: int) -> RepairTicket:
    ticket = db.execute(_ticket_query().where(RepairTicket.id == ticket_id)).scalar_one_or_none()
    if not ticket:
        raise RepairTicketNotFoundError(f"Repair ticket {ticket_id} not found")
    return ticket


def get_ticket_by_code(db: Session, ticket_code: str) -> RepairTicket:
    ticket = db.execute(
        _ticket_query().where(RepairTicket.ticket_code == ticket_code.strip().upper())
    ).scalar_one_or_none()
    if not ticket:
        raise RepairTicketNotFoundError(f"Repair ticket {ticket_code} not found")
    return ticket


def list_tickets(
    db: Session,
    *,
    status: RepairTicketStatus | None = None,
    urgency: UrgencyLevel | None = None,
    assignee_id: int | None = None,
    user_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[RepairTicket], int]:
    """Newest first. ``user_id`` restricts to tickets owned by that account."""
    query = _ticket_query()
    count_query = select(func.count(RepairTicket.id))
    filters = []
    if status:
        filters.append(RepairTicket.status == status)
    if urgency:
        filters.append(RepairTicket.urgency == urgency)
    if user_id is not None:
        filters.append(RepairTicket.user_id == user_id)
    if assignee_id is not None:
        filters.append(
            RepairTicket.assignees.any(RepairTicketAssignee.user_id == assignee_id)
        )
    if filters:
        query = query.where(*filters)
        count_query = count_query.where(*filters)

    total = db.execute(count_query).scalar_one()
    page_limit = max(1, min(limit, 100))
    items = db.execute(
        query.order_by(RepairTicket.created_at.desc(), RepairTicket.id.desc())
        .limit(page_limit)
        .offset(max(offset, 0))
    ).scalars().all()
    return list(items), total


def list_tickets_for_line_user(
    db: Session,
    line_user_id: str,
    *,
    linked_user_id: int | None = None,
    limit: int = 3,
    offset: int = 0,
) -> tuple[list[RepairTicket], int]:
    """Tickets reported through this LINE identity or owned by its linked account."""
    owner = RepairTicket.reporter_line_user_id == line_user_id
    if linked_user_id is not None:
        owner = or_(owner, RepairTicket.user_id == linked_user_id)
    total = db.execute(select(func.count(RepairTicket.id)).where(owner)).scalar_one()
    items = db.execute(
        select(RepairTicket)
        .where(owner)
        .order_by(RepairTicket.created_at.desc(), RepairTicket.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return list(items), total


def get_statistics(db: Session) -> dict:
    by_status = {status.value: 0 for status in RepairTicketStatus}
    for status, count in db.execute(
        select(RepairTicket.status, func.count(RepairTicket.id)).group_by(RepairTicket.status)
    ):
        by_status[status.value] = count
    by_urgency = {urgency.value: 0 for urgency in UrgencyLevel}
    for urgency, count in db.execute(
        select(RepairTicket.urgency, func.count(RepairTicket.id)).group_by(RepairTicket.urgency)
    ):
        by_urgency[urgency.value] = count
    return {"total": sum(by_status.values()), "by_status": by_status, "by_urgency": by_urgency}


def get_schedule(db: Session, *, start: datetime, end: datetime) -> list[RepairTicket]:
    """Open tickets with a scheduled visit inside ``[start, end)``."""
    return list(
        db.execute(
            _ticket_query()
            .where(
                RepairTicket.scheduled_at.is_not(None),
                RepairTicket.scheduled_at >= start,
                RepairTicket.scheduled_at < end,
                RepairTicket.status.not_in(
                    [RepairTicketStatus.COMPLETED, RepairTicketStatus.CANCELLED]
                ),
            )
            .order_by(RepairTicket.scheduled_at)
        ).scalars()
    )


# =============================================================================
# Helpers
# =============================================================================


def new_linking_code(ticket_code: str) -> str:
    suffix = "".join(secrets.choice(LINKING_SUFFIX_ALPHABET) for _ in range(4))
    return f"{ticket_code}-{suffix}"


def _ensure_assignees_exist(db: Session, user_ids: Sequence[int]) -> None:
    if not user_ids:
        return
    found = set(
        db.execute(
            select(User.id).where(User.id.in_(user_ids), User.is_active.is_(True))
        ).scalars()
    )
    missing = set(user_ids) - found
    if missing:
        raise InvalidAssigneeError(missing)


def _validate_files(files: Sequence[IncomingFile]) -> None:
    for incoming in files:
        try:
            validate_image(incoming.content, incoming.content_type)
        except StorageValidationError as exc:
            raise AttachmentValidationError(f"{incoming.filename}: {exc}") from exc


def _upload_files(
    storage: BlobStorage | None,
    ticket: RepairTicket,
    files: Sequence[IncomingFile],
    kind: AttachmentKind,
) -> list[RepairAttachment]:
    """Upload already-validated files; a storage failure skips that file."""
    if not files:
        return []
    if storage is None:
        logger.warning(
            "No blob storage configured, dropping %s attachment(s)",
            len(files),
            extra=build_log_context(ticket_code=ticket.ticket_code),
        )
        return []
    attachments = []
    for incoming in files:
        try:
            stored = storage.upload_file(
                incoming.content,
                incoming.filename,
                f"repairs/{ticket.ticket_code}",
                incoming.content_type,
            )
        except Exception:
            logger.exception(
                "Attachment upload failed for %s",
                incoming.filename,
                extra=build_log_context(ticket_code=ticket.ticket_code),
            )
            continue
        attachments.append(
            RepairAttachment(
                repair_ticket_id=ticket.id,
                kind=kind,
                filename=incoming.filename,
                file_url=stored.url,
                storage_key=stored.key,
                file_size=len(incoming.content),
                mime_type=incoming.content_type,
            )
        )
    return attachments


def _is_code_conflict(error: IntegrityError) -> bool:
    """Unique violation on a code column; anything else is not worth retrying."""
    constraint_name = getattr(getattr(error.orig, "diag", None), "constraint_name", None)
    message = constraint_name or (str(error.orig) if error.orig else str(error))
    return "ticket_code" in message or "linking_code" in message


def _replace_assignees(db: Session, ticket: RepairTicket, user_ids: Sequence[int]) -> None:
    """Delete-then-insert inside the caller's transaction."""
    db.execute(
        delete(RepairTicketAssignee).where(RepairTicketAssignee.repair_ticket_id == ticket.id)
    )
    db.expire(ticket, ["assignees"])
    db.add_all(RepairTicketAssignee(repair_ticket_id=ticket.id, user_id=uid) for uid in user_ids)
    db.flush()


async def _notify_safely(
    pending: Awaitable[NotificationResult], *, what: str, ticket_code: str
) -> NotificationResult | None:
    """Await a notification; delivery problems never reach the caller."""
    try:
        return await pending
    except Exception:
        logger.exception(
            "LINE %s notification failed",
            what,
            extra=build_log_context(ticket_code=ticket_code),
        )
        return None


# =============================================================================
# Create
# =============================================================================


async def create_ticket(
    db: Session,
    client: LineMessagingClient,
    command: RepairTicketCreateCommand,
    *,
    files: Sequence[IncomingFile] = (),
    line_user_id: str | None = None,
    storage: BlobStorage | None = None,
) -> RepairTicket:
    """
    File a new ticket.

    ``line_user_id`` is the reporter's LINE identity when the request came
    through the chat intake form; without one the ticket gets a linking code
    the reporter can send to the chat later.
    """
    _validate_files(files)
    if command.user_id is not None and db.get(User, command.user_id) is None:
        raise UnknownReporterError(command.user_id)

    ticket: RepairTicket | None = None
    for attempt in range(CODE_ATTEMPTS):
        ticket_code = generate_ticket_code(db)
        ticket = RepairTicket(
            ticket_code=ticket_code,
            linking_code=None if line_user_id else new_linking_code(ticket_code),
            status=RepairTicketStatus.PENDING,
            urgency=command.urgency,
            reporter_name=command.reporter_name,
            reporter_department=command.reporter_department,
            reporter_phone=command.reporter_phone,
            reporter_line_id=command.reporter_line_id,
            reporter_line_user_id=line_user_id,
            user_id=command.user_id,
            problem_category=command.problem_category,
            problem_title=command.problem_title,
            problem_description=command.problem_description,
            location=command.location,
        )
        try:
            with db.begin_nested():
                db.add(ticket)
                db.flush()
            break
        except IntegrityError as exc:
            if not _is_code_conflict(exc):
                raise
            ticket = None
            logger.warning("Ticket code %s collided, retrying (%s)", ticket_code, attempt + 1)
    if ticket is None:
        raise TicketCodeGenerationError("Could not allocate a unique ticket code")

    db.add_all(_upload_files(storage, ticket, files, AttachmentKind.PROBLEM))
    db.commit()
    ticket = get_ticket(db, ticket.id)
    logger.info(
        "Repair ticket created",
        extra=build_log_context(ticket_code=ticket.ticket_code, user_id=command.user_id),
    )

    await _notify_safely(
        line_notification_service.notify_staff_on_new_ticket(db, client, ticket),
        what="new ticket",
        ticket_code=ticket.ticket_code,
    )
    await _notify_safely(
        line_notification_service.notify_reporter(
            db, client, ticket, line_notification_service.build_status_update(ticket)
        ),
        what="reporter acknowledgement",
        ticket_code=ticket.ticket_code,
    )
    return ticket


async def add_completion_attachments(
    db: Session,
    ticket_id: int,
    files: Sequence[IncomingFile],
    *,
    storage: BlobStorage | None,
) -> list[RepairAttachment]:
    ticket = get_ticket(db, ticket_id)
    _validate_files(files)
    attachments = _upload_files(storage, ticket, files, AttachmentKind.COMPLETION)
    db.add_all(attachments)
    db.commit()
    return attachments


# =============================================================================
# Update / cancel
# =============================================================================


def _technician_kind(user_id: int, actor_id: int | None, had_assignees: bool) -> TechnicianNoticeKind:
    if user_id == actor_id:
        return TechnicianNoticeKind.CLAIMED
    if had_assignees:
        return TechnicianNoticeKind.TRANSFERRED
    return TechnicianNoticeKind.ASSIGNED


async def update_ticket(
    db: Session,
    client: LineMessagingClient,
    ticket_id: int,
    command: RepairTicketUpdateCommand,
    *,
    actor_id: int | None,
) -> RepairTicket:
    """
    Apply a partial update.

    Raises InvalidStatusTransitionError or InvalidAssigneeError before any
    row changes. Ledger entries and notifications follow the commit.
    """
    ticket = get_ticket(db, ticket_id)
    sent = command.model_fields_set

    previous_status = ticket.status
    target_status = command.status if "status" in sent and command.status else previous_status
    ensure_transition(previous_status, target_status)
    status_changed = target_status != previous_status

    previous_assignees = ticket.assignee_ids
    new_assignees: list[int] | None = None
    if "assignee_ids" in sent and command.assignee_ids is not None:
        _ensure_assignees_exist(db, command.assignee_ids)
        if set(command.assignee_ids) != set(previous_assignees):
            new_assignees = command.assignee_ids

    previous_notes = ticket.notes
    previous_message = ticket.message_to_reporter

    for name in PATCHABLE_FIELDS:
        if name not in sent:
            continue
        value = getattr(command, name)
        if value is None and name in NON_NULLABLE_FIELDS:
            continue
        setattr(ticket, name, value)

    if status_changed:
        ticket.status = target_status
        if target_status == RepairTicketStatus.COMPLETED:
            ticket.completed_at = _utcnow()
        elif target_status == RepairTicketStatus.CANCELLED:
            ticket.cancelled_at = _utcnow()

    try:
        if new_assignees is not None:
            _replace_assignees(db, ticket, new_assignees)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Ticket %s update rejected by constraints: %s", ticket_id, exc.orig)
        raise InvalidAssigneeError(set(new_assignees or [])) from exc

    ticket = get_ticket(db, ticket_id)
    log_context = build_log_context(ticket_code=ticket.ticket_code, user_id=actor_id)
    logger.info("Repair ticket updated", extra=log_context)

    # Ledger
    if new_assignees is not None:
        assignment_ledger.record_assignment_delta(
            db,
            ticket_id=ticket.id,
            previous_ids=previous_assignees,
            new_ids=new_assignees,
            actor_id=actor_id,
            note=command.notes if "notes" in sent else None,
        )
    if status_changed:
        assignment_ledger.record_status_change(
            db,
            ticket_id=ticket.id,
            from_status=previous_status,
            to_status=target_status,
            actor_id=actor_id,
            note=command.notes if "notes" in sent else None,
        )
    if "notes" in sent and command.notes and command.notes != previous_notes:
        assignment_ledger.record_note(
            db,
            ticket_id=ticket.id,
            action=AssignmentAction.NOTE,
            actor_id=actor_id,
            note=command.notes,
        )
    if (
        "message_to_reporter" in sent
        and command.message_to_reporter
        and command.message_to_reporter != previous_message
    ):
        assignment_ledger.record_note(
            db,
            ticket_id=ticket.id,
            action=AssignmentAction.MESSAGE_TO_REPORTER,
            actor_id=actor_id,
            note=command.message_to_reporter,
        )

    # Notifications
    if new_assignees is not None:
        added = [uid for uid in new_assignees if uid not in previous_assignees]
        for uid in added:
            await _notify_safely(
                line_notification_service.notify_technician(
                    db,
                    client,
                    user_id=uid,
                    kind=_technician_kind(uid, actor_id, bool(previous_assignees)),
                    ticket=ticket,
                    note=ticket.notes,
                ),
                what="technician assignment",
                ticket_code=ticket.ticket_code,
            )

    if status_changed and is_terminal(target_status):
        kind = (
            TechnicianNoticeKind.COMPLETED
            if target_status == RepairTicketStatus.COMPLETED
            else TechnicianNoticeKind.CANCELLED
        )
        for uid in ticket.assignee_ids:
            await _notify_safely(
                line_notification_service.notify_technician(
                    db, client, user_id=uid, kind=kind, ticket=ticket, note=ticket.notes
                ),
                what=f"technician {kind.value.lower()}",
                ticket_code=ticket.ticket_code,
            )

    if status_changed:
        await _notify_safely(
            line_notification_service.notify_reporter(
                db, client, ticket, line_notification_service.build_status_update(ticket)
            ),
            what="reporter status",
            ticket_code=ticket.ticket_code,
        )

    return ticket


async def cancel_ticket(
    db: Session,
    client: LineMessagingClient,
    ticket_id: int,
    *,
    actor_id: int | None,
    reason: str | None = None,
) -> RepairTicket:
    """Move the ticket to CANCELLED through the regular update path."""
    fields: dict = {"status": RepairTicketStatus.CANCELLED}
    if reason:
        fields["notes"] = reason
    return await update_ticket(
        db, client, ticket_id, RepairTicketUpdateCommand(**fields), actor_id=actor_id
    )


async def rush_ticket(
    db: Session, client: LineMessagingClient, ticket_id: int
) -> NotificationResult:
    ticket = get_ticket(db, ticket_id)
    result = await _notify_safely(
        line_notification_service.notify_rush_reminder(db, client, ticket),
        what="rush reminder",
        ticket_code=ticket.ticket_code,
    )
    return result or NotificationResult.skipped("delivery_failed")
