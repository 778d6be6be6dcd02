"""Binding internal accounts and guest tickets to LINE identities."""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from repairdesk.core.config import settings
from repairdesk.core.structured_logging import build_log_context
from repairdesk.db.enums import LineLinkStatus
from repairdesk.db.models import LineOALink, RepairTicket
from repairdesk.services.repair_errors import InvalidLinkingCodeError

logger = logging.getLogger(__name__)


class LinkingError(Exception):
    """Base exception for the account-linking flow."""
    pass


class AccountAlreadyLinkedError(LinkingError):
    """User already has a verified LINE link."""
    pass


class InvalidVerificationTokenError(LinkingError):
    """Token unknown, not issued to this user, or expired."""
    pass


class LineIdentityInUseError(LinkingError):
    """LINE identity is verified for a different user and ``force`` was not set."""
    pass


class LinkNotFoundError(LinkingError):
    """User has no LINE link to remove."""
    pass


@dataclass(frozen=True)
class LinkingInvite:
    verification_token: str
    expires_at: datetime
    linking_url: str


def linking_code_pattern() -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(settings.TICKET_CODE_PREFIX)}-\d+-[A-Z0-9]{{4}}$")


def looks_like_linking_code(text: str) -> bool:
    return bool(linking_code_pattern().match(text.strip().upper()))


def _as_aware(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are UTC
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def get_link(db: Session, user_id: int) -> LineOALink | None:
    return db.execute(select(LineOALink).where(LineOALink.user_id == user_id)).scalar_one_or_none()


def get_verified_link_by_line_user(db: Session, line_user_id: str) -> LineOALink | None:
    return db.execute(
        select(LineOALink).where(
            LineOALink.line_user_id == line_user_id,
            LineOALink.status == LineLinkStatus.VERIFIED,
        )
    ).scalars().first()


# =============================================================================
# Account linking
# =============================================================================


def initiate_linking(db: Session, user_id: int, *, now: datetime | None = None) -> LinkingInvite:
    """Issue a fresh verification token (replaces any pending one)."""
    link = get_link(db, user_id)
    if link and link.status == LineLinkStatus.VERIFIED:
        raise AccountAlreadyLinkedError("Account already linked")

    token = secrets.token_hex(32)
    expires_at = (now or datetime.now(timezone.utc)) + timedelta(
        minutes=settings.LINKING_TOKEN_TTL_MINUTES
    )
    if link is None:
        link = LineOALink(user_id=user_id)
        db.add(link)
    link.status = LineLinkStatus.PENDING
    link.verification_token = token
    link.verification_expiry = expires_at
    db.commit()

    return LinkingInvite(
        verification_token=token,
        expires_at=expires_at,
        linking_url=f"{settings.frontend_base_url}/auth/line/callback?token={token}",
    )


def verify_link(
    db: Session,
    user_id: int,
    *,
    line_user_id: str,
    verification_token: str,
    display_name: str | None = None,
    picture_url: str | None = None,
    force: bool = False,
    now: datetime | None = None,
) -> LineOALink:
    """
    Complete linking with the token from ``initiate_linking``.

    A LINE identity can be verified for one user at a time; with ``force``
    the other user's link is removed first.
    """
    link = db.execute(
        select(LineOALink).where(
            LineOALink.user_id == user_id,
            LineOALink.verification_token == verification_token,
        )
    ).scalar_one_or_none()
    if not link:
        raise InvalidVerificationTokenError("Invalid verification token")
    current = now or datetime.now(timezone.utc)
    if link.verification_expiry and _as_aware(link.verification_expiry) < current:
        raise InvalidVerificationTokenError("Verification token expired")

    others = db.execute(
        select(LineOALink).where(
            LineOALink.line_user_id == line_user_id, LineOALink.user_id != user_id
        )
    ).scalars().all()
    if others:
        if not force:
            raise LineIdentityInUseError("This LINE account is already linked")
        for other in others:
            logger.info(
                "Force linking: removing LINE link from another user",
                extra=build_log_context(user_id=other.user_id, line_user_id=line_user_id),
            )
            db.delete(other)
        db.flush()

    link.line_user_id = line_user_id
    link.status = LineLinkStatus.VERIFIED
    link.verification_token = None
    link.verification_expiry = None
    if display_name is not None:
        link.display_name = display_name
    if picture_url is not None:
        link.picture_url = picture_url
    db.commit()
    db.refresh(link)
    logger.info("LINE account linked", extra=build_log_context(user_id=user_id, line_user_id=line_user_id))
    return link


def get_linking_status(db: Session, user_id: int) -> dict:
    link = get_link(db, user_id)
    if not link or link.status != LineLinkStatus.VERIFIED:
        return {"is_linked": False, "status": link.status if link else None}
    return {
        "is_linked": True,
        "status": link.status,
        "line_user_id": link.line_user_id,
        "display_name": link.display_name,
        "picture_url": link.picture_url,
        "linked_at": link.updated_at,
    }


def unlink_account(db: Session, user_id: int) -> None:
    link = get_link(db, user_id)
    if not link:
        raise LinkNotFoundError("No LINE account linked")
    db.delete(link)
    db.commit()
    logger.info("LINE account unlinked", extra=build_log_context(user_id=user_id))


def update_profile_from_line(
    db: Session, user_id: int, *, display_name: str | None, picture_url: str | None
) -> LineOALink:
    link = get_link(db, user_id)
    if not link:
        raise LinkNotFoundError("No LINE account linked")
    link.display_name = display_name
    link.picture_url = picture_url
    db.commit()
    return link


def mark_unlinked(db: Session, line_user_id: str) -> int:
    """Mark every link bound to ``line_user_id`` as UNLINKED (user blocked the OA)."""
    result = db.execute(
        update(LineOALink)
        .where(LineOALink.line_user_id == line_user_id)
        .values(status=LineLinkStatus.UNLINKED)
    )
    db.commit()
    return result.rowcount or 0


# =============================================================================
# Guest tickets
# =============================================================================


def link_reporter_line(db: Session, linking_code: str, line_user_id: str) -> RepairTicket:
    """
    Bind a guest ticket to the LINE identity that sent its linking code.

    Sending the code again from the same identity is a no-op.
    """
    code = linking_code.strip().upper()
    if not looks_like_linking_code(code):
        raise InvalidLinkingCodeError("Malformed linking code")
    ticket = db.execute(
        select(RepairTicket).where(RepairTicket.linking_code == code)
    ).scalar_one_or_none()
    if not ticket:
        raise InvalidLinkingCodeError("Linking code not found")
    if ticket.reporter_line_user_id and ticket.reporter_line_user_id != line_user_id:
        raise InvalidLinkingCodeError("Ticket is already linked to another LINE account")
    if ticket.reporter_line_user_id != line_user_id:
        ticket.reporter_line_user_id = line_user_id
        db.commit()
        logger.info(
            "Guest ticket linked to LINE",
            extra=build_log_context(ticket_code=ticket.ticket_code, line_user_id=line_user_id),
        )
    return ticket
