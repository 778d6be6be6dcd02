"""LINE notification dispatcher for repair tickets.

Resolves recipients, renders the card, sends with bounded retry and writes
one delivery log row per recipient. A send that still fails after retries is
logged as FAILED and surfaces as NotificationDeliveryError; the workflow
service catches it so ticket changes never depend on delivery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from repairdesk.core.structured_logging import build_log_context
from repairdesk.db.enums import (
    STAFF_ROLES,
    LineLinkStatus,
    LineNotificationStatus,
    LineNotificationType,
    TechnicianNoticeKind,
)
from repairdesk.db.models import LineNotification, LineOALink, RepairTicket, User
from repairdesk.services import line_templates
from repairdesk.services.line_api import LineMessagingClient, chunk_recipients
from repairdesk.services.line_templates import StatusUpdate, TicketSummary
from repairdesk.services.retry_service import send_with_retry

logger = logging.getLogger(__name__)

NOT_LINKED = "not_linked"
NO_RECIPIENTS = "no_recipients"


class NotificationDeliveryError(Exception):
    """A send failed after all retries; FAILED rows have been written."""

    def __init__(self, message: str, *, notification_type: LineNotificationType, recipients: list[str]):
        self.notification_type = notification_type
        self.recipients = recipients
        super().__init__(message)


@dataclass
class NotificationResult:
    success: bool
    recipients: list[str] = field(default_factory=list)
    channel: str | None = None
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> NotificationResult:
        return cls(success=False, reason=reason)


# =============================================================================
# Recipient resolution
# =============================================================================


def get_verified_line_user_id(db: Session, user_id: int | None) -> str | None:
    """LINE identity for ``user_id`` if the link is VERIFIED, else None."""
    if user_id is None:
        return None
    return db.execute(
        select(LineOALink.line_user_id).where(
            LineOALink.user_id == user_id,
            LineOALink.status == LineLinkStatus.VERIFIED,
            LineOALink.line_user_id.is_not(None),
        )
    ).scalar_one_or_none()


def list_staff_line_user_ids(db: Session) -> list[str]:
    """Distinct VERIFIED identities of active IT/admin users."""
    rows = db.execute(
        select(LineOALink.line_user_id)
        .join(User, User.id == LineOALink.user_id)
        .where(
            User.role.in_(STAFF_ROLES),
            User.is_active.is_(True),
            LineOALink.status == LineLinkStatus.VERIFIED,
            LineOALink.line_user_id.is_not(None),
        )
        .order_by(LineOALink.id)
    ).scalars()
    return list(dict.fromkeys(rows))


def _assignee_names(ticket: RepairTicket) -> list[str]:
    return [a.user.name for a in ticket.assignees if a.user is not None]


# =============================================================================
# Delivery + log
# =============================================================================


def _write_log(
    db: Session,
    recipients: list[str],
    *,
    notification_type: LineNotificationType,
    title: str,
    message: str,
    status: LineNotificationStatus,
    error_message: str | None = None,
) -> None:
    try:
        db.add_all(
            LineNotification(
                line_user_id=recipient,
                type=notification_type,
                title=title,
                message=message,
                status=status,
                error_message=error_message,
            )
            for recipient in recipients
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write LINE notification log (%s)", notification_type.value)


async def _deliver(
    db: Session,
    recipients: list[str],
    operation: Callable[[], Awaitable[None]],
    *,
    notification_type: LineNotificationType,
    title: str,
    message: str,
    ticket_code: str | None = None,
) -> None:
    try:
        await send_with_retry(operation)
    except Exception as exc:
        _write_log(
            db,
            recipients,
            notification_type=notification_type,
            title=title,
            message=message,
            status=LineNotificationStatus.FAILED,
            error_message=str(exc),
        )
        logger.warning(
            "LINE %s delivery failed for %s recipient(s)",
            notification_type.value,
            len(recipients),
            extra=build_log_context(ticket_code=ticket_code),
        )
        raise NotificationDeliveryError(
            str(exc), notification_type=notification_type, recipients=recipients
        ) from exc

    _write_log(
        db,
        recipients,
        notification_type=notification_type,
        title=title,
        message=message,
        status=LineNotificationStatus.SENT,
    )


async def _deliver_multicast(
    db: Session,
    client: LineMessagingClient,
    recipients: list[str],
    messages: list[dict],
    *,
    notification_type: LineNotificationType,
    title: str,
    message: str,
    ticket_code: str | None = None,
) -> None:
    """
    Multicast one chunk at a time.

    Each chunk is retried and logged on its own, so a failing chunk never
    resends to recipients an earlier chunk already reached. Later chunks are
    still attempted; the error names every recipient that was missed.
    """
    failed: list[str] = []
    last_error: NotificationDeliveryError | None = None
    for chunk in chunk_recipients(recipients):
        try:
            await _deliver(
                db,
                chunk,
                lambda chunk=chunk: client.multicast(chunk, messages),
                notification_type=notification_type,
                title=title,
                message=message,
                ticket_code=ticket_code,
            )
        except NotificationDeliveryError as exc:
            failed.extend(chunk)
            last_error = exc
    if last_error is not None:
        raise NotificationDeliveryError(
            str(last_error), notification_type=notification_type, recipients=failed
        ) from last_error


# =============================================================================
# Public operations
# =============================================================================


async def notify_staff_on_new_ticket(
    db: Session, client: LineMessagingClient, ticket: RepairTicket
) -> NotificationResult:
    """Multicast the new-ticket card to every staff member with a verified link."""
    recipients = list_staff_line_user_ids(db)
    if not recipients:
        logger.info(
            "No linked staff to notify about new ticket",
            extra=build_log_context(ticket_code=ticket.ticket_code),
        )
        return NotificationResult.skipped(NO_RECIPIENTS)

    summary = TicketSummary.from_ticket(ticket)
    card = line_templates.render_new_ticket(summary)
    await _deliver_multicast(
        db,
        client,
        recipients,
        [card],
        notification_type=LineNotificationType.REPAIR_TICKET_CREATED,
        title=f"New repair request {ticket.ticket_code}",
        message=f"{ticket.problem_title} ({line_templates.urgency_style(ticket.urgency).label})",
        ticket_code=ticket.ticket_code,
    )
    return NotificationResult(success=True, recipients=recipients, channel="multicast")


_TECHNICIAN_TYPES = {
    TechnicianNoticeKind.ASSIGNED: LineNotificationType.REPAIR_TICKET_ASSIGNED,
    TechnicianNoticeKind.TRANSFERRED: LineNotificationType.REPAIR_TICKET_ASSIGNED,
    TechnicianNoticeKind.CLAIMED: LineNotificationType.REPAIR_TICKET_ASSIGNED,
    TechnicianNoticeKind.COMPLETED: LineNotificationType.REPAIR_TICKET_COMPLETED,
    TechnicianNoticeKind.CANCELLED: LineNotificationType.REPAIR_TICKET_CANCELLED,
}


def _render_for_technician(
    kind: TechnicianNoticeKind, summary: TicketSummary, ticket: RepairTicket, note: str | None
) -> dict:
    if kind == TechnicianNoticeKind.COMPLETED:
        return line_templates.render_technician_completion(summary, note, ticket.completed_at)
    if kind == TechnicianNoticeKind.CANCELLED:
        return line_templates.render_technician_cancellation(summary, note, ticket.cancelled_at)
    return line_templates.render_technician_assignment(summary, kind.value, note)


async def notify_technician(
    db: Session,
    client: LineMessagingClient,
    *,
    user_id: int,
    kind: TechnicianNoticeKind,
    ticket: RepairTicket,
    note: str | None = None,
) -> NotificationResult:
    """
    Push an assignment, completion or cancellation card to one technician.

    Technicians without a verified link are common; that returns a
    ``not_linked`` result instead of raising.
    """
    line_user_id = get_verified_line_user_id(db, user_id)
    if not line_user_id:
        return NotificationResult.skipped(NOT_LINKED)

    summary = TicketSummary.from_ticket(ticket)
    card = _render_for_technician(kind, summary, ticket, note)
    await _deliver(
        db,
        [line_user_id],
        lambda: client.push_message(line_user_id, [card]),
        notification_type=_TECHNICIAN_TYPES[kind],
        title=card["altText"],
        message=ticket.problem_title,
        ticket_code=ticket.ticket_code,
    )
    return NotificationResult(success=True, recipients=[line_user_id], channel="push")


async def notify_reporter(
    db: Session,
    client: LineMessagingClient,
    ticket: RepairTicket,
    update: StatusUpdate,
) -> NotificationResult:
    """
    Tell the reporter about a status change through exactly one channel.

    The LINE identity captured on the ticket wins; the owning account's
    verified link is used only when the ticket has none.
    """
    summary = TicketSummary.from_ticket(ticket)
    style = line_templates.status_style(update.status)

    if ticket.reporter_line_user_id:
        recipient = ticket.reporter_line_user_id
        card = line_templates.render_reporter_direct(summary, update)
        notification_type = LineNotificationType.REPAIR_REPORTER_UPDATE
        channel = "direct"
    else:
        recipient = get_verified_line_user_id(db, ticket.user_id)
        if not recipient:
            return NotificationResult.skipped(NOT_LINKED)
        card = line_templates.render_status_update(summary, update)
        notification_type = LineNotificationType.REPAIR_STATUS_UPDATE
        channel = "linked"

    await _deliver(
        db,
        [recipient],
        lambda: client.push_message(recipient, [card]),
        notification_type=notification_type,
        title=f"Status update {ticket.ticket_code}",
        message=update.message_to_reporter or update.remark or style.label,
        ticket_code=ticket.ticket_code,
    )
    return NotificationResult(success=True, recipients=[recipient], channel=channel)


async def notify_rush_reminder(
    db: Session, client: LineMessagingClient, ticket: RepairTicket
) -> NotificationResult:
    """Nudge the assigned technicians, or every linked staff member if unassigned."""
    if ticket.assignees:
        recipients = list(
            dict.fromkeys(
                line_user_id
                for line_user_id in (
                    get_verified_line_user_id(db, a.user_id) for a in ticket.assignees
                )
                if line_user_id
            )
        )
    else:
        recipients = list_staff_line_user_ids(db)
    if not recipients:
        return NotificationResult.skipped(NOT_LINKED)

    card = line_templates.render_rush_reminder(TicketSummary.from_ticket(ticket))
    log_fields = dict(
        notification_type=LineNotificationType.REPAIR_RUSH_REMINDER,
        title=f"Rush request {ticket.ticket_code}",
        message=ticket.problem_title,
        ticket_code=ticket.ticket_code,
    )
    if len(recipients) == 1:
        await _deliver(
            db, recipients, lambda: client.push_message(recipients[0], [card]), **log_fields
        )
    else:
        await _deliver_multicast(db, client, recipients, [card], **log_fields)
    return NotificationResult(success=True, recipients=recipients, channel="push")


def build_status_update(ticket: RepairTicket, *, remark: str | None = None) -> StatusUpdate:
    return StatusUpdate(
        status=getattr(ticket.status, "value", ticket.status),
        remark=remark if remark is not None else ticket.notes,
        message_to_reporter=ticket.message_to_reporter,
        technician_names=_assignee_names(ticket),
        updated_at=ticket.updated_at,
    )


def list_notifications(
    db: Session, line_user_id: str, *, limit: int = 50
) -> list[LineNotification]:
    """Delivery history for one LINE identity, newest first."""
    return list(
        db.execute(
            select(LineNotification)
            .where(LineNotification.line_user_id == line_user_id)
            .order_by(LineNotification.created_at.desc(), LineNotification.id.desc())
            .limit(limit)
        ).scalars()
    )
