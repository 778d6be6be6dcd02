"""Repair ticket code generation.

Codes look like ``TRR-10022569001``: prefix, day, month, Buddhist-era year
and a per-day sequence, computed in the desk's local timezone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from repairdesk.core.config import settings
from repairdesk.db.models import RepairTicket

logger = logging.getLogger(__name__)

BUDDHIST_ERA_OFFSET = 543


def desk_now() -> datetime:
    """Current time in the desk's timezone."""
    return datetime.now(ZoneInfo(settings.DESK_TIMEZONE))


def code_date_part(moment: datetime) -> str:
    """``ddmmyyyy`` with the Buddhist-era year."""
    local = moment.astimezone(ZoneInfo(settings.DESK_TIMEZONE))
    return f"{local.day:02d}{local.month:02d}{local.year + BUDDHIST_ERA_OFFSET}"


def format_ticket_code(prefix: str, date_part: str, sequence: int) -> str:
    return f"{prefix}-{date_part}{sequence:03d}"


def _highest_existing_sequence(db: Session, code_stem: str) -> int:
    """Largest sequence already issued for ``code_stem`` (0 when none)."""
    codes = db.execute(
        select(RepairTicket.ticket_code).where(RepairTicket.ticket_code.like(f"{code_stem}%"))
    ).scalars()
    highest = 0
    for code in codes:
        suffix = code[len(code_stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def generate_ticket_code(db: Session, *, now: datetime | None = None) -> str:
    """
    Allocate the next ticket code for today.

    The counter row is bumped with a single upsert so concurrent creators
    never read the same value. The counter is seeded above any code already
    in the table, so codes issued before the counter existed are never reused.
    Runs inside the caller's transaction.
    """
    prefix = settings.TICKET_CODE_PREFIX
    date_part = code_date_part(now or desk_now())
    code_stem = f"{prefix}-{date_part}"
    seed = _highest_existing_sequence(db, code_stem) + 1

    result = db.execute(
        text(
            """
            INSERT INTO repair_ticket_counters (date_key, current_value, updated_at)
            VALUES (:date_key, :seed, CURRENT_TIMESTAMP)
            ON CONFLICT (date_key)
            DO UPDATE SET current_value = CASE
                    WHEN repair_ticket_counters.current_value + 1 > :seed
                        THEN repair_ticket_counters.current_value + 1
                    ELSE :seed
                END,
                updated_at = CURRENT_TIMESTAMP
            RETURNING current_value
            """
        ),
        {"date_key": code_stem, "seed": seed},
    ).scalar_one_or_none()
    if result is None:
        raise RuntimeError("Failed to generate ticket code")
    return format_ticket_code(prefix, date_part, result)
