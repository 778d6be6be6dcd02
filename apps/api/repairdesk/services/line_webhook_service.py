"""LINE webhook event routing.

Called after the signature check. Each event is handled on its own: an
exception in one handler is logged and the rest of the batch continues.
"""

from __future__ import annotations

import logging
import math
from typing import Any
from urllib.parse import parse_qs

from pydantic import ValidationError
from sqlalchemy.orm import Session

from repairdesk.core.config import settings
from repairdesk.core.structured_logging import build_log_context
from repairdesk.schemas.line_oa import LineWebhookEvent
from repairdesk.services import line_linking_service, line_templates, repair_service
from repairdesk.services.line_api import LineApiError, LineMessagingClient
from repairdesk.services.line_templates import CheckStatusItem
from repairdesk.services.repair_errors import InvalidLinkingCodeError

logger = logging.getLogger(__name__)


async def handle_events(
    db: Session, client: LineMessagingClient, events: list[dict[str, Any]]
) -> int:
    """Dispatch every event; returns how many were handled without error."""
    handled = 0
    for raw in events:
        try:
            event = LineWebhookEvent.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed LINE event")
            continue
        try:
            await handle_event(db, client, event)
            handled += 1
        except Exception:
            db.rollback()
            logger.exception(
                "LINE event handler failed",
                extra=build_log_context(event_type=event.type, line_user_id=event.user_id),
            )
    return handled


async def handle_event(db: Session, client: LineMessagingClient, event: LineWebhookEvent) -> None:
    user_id = event.user_id
    if not user_id:
        logger.info("LINE %s event without a user source, ignoring", event.type)
        return

    if event.type == "follow":
        await handle_follow(db, client, event)
    elif event.type == "unfollow":
        line_linking_service.mark_unlinked(db, user_id)
    elif event.type == "message":
        await handle_message(db, client, event)
    elif event.type == "postback":
        await handle_postback(db, client, event)
    else:
        logger.debug("Unhandled LINE event type: %s", event.type)


async def handle_follow(db: Session, client: LineMessagingClient, event: LineWebhookEvent) -> None:
    await client.reply_or_push(event.replyToken, event.user_id, [line_templates.render_welcome()])
    if settings.LINE_RICH_MENU_ID:
        await client.link_rich_menu(event.user_id, settings.LINE_RICH_MENU_ID)

    # Refresh the cached profile of an already-linked account
    link = line_linking_service.get_verified_link_by_line_user(db, event.user_id)
    if not link:
        return
    try:
        profile = await client.get_profile(event.user_id)
    except LineApiError as exc:
        logger.warning(
            "Could not fetch LINE profile: %s",
            exc,
            extra=build_log_context(user_id=link.user_id, line_user_id=event.user_id),
        )
        return
    line_linking_service.update_profile_from_line(
        db,
        link.user_id,
        display_name=profile.get("displayName"),
        picture_url=profile.get("pictureUrl"),
    )


async def handle_message(db: Session, client: LineMessagingClient, event: LineWebhookEvent) -> None:
    if not event.message or event.message.type != "text" or not event.message.text:
        return
    text = event.message.text.strip()
    user_id = event.user_id

    if line_linking_service.looks_like_linking_code(text):
        try:
            ticket = line_linking_service.link_reporter_line(db, text, user_id)
        except InvalidLinkingCodeError as exc:
            reply = line_templates.render_link_failure(str(exc))
        else:
            reply = line_templates.render_link_success(ticket.ticket_code)
        await client.reply_or_push(event.replyToken, user_id, [reply])
        return

    if settings.LINE_REPAIR_KEYWORD and settings.LINE_REPAIR_KEYWORD in text:
        await client.reply_or_push(
            event.replyToken, user_id, [line_templates.render_intake_link(user_id)]
        )
        return

    await client.reply_or_push(event.replyToken, user_id, [line_templates.render_help()])


def parse_postback(data: str) -> dict[str, str]:
    """``action=check_status&page=2`` → ``{"action": "check_status", "page": "2"}``."""
    return {key: values[0] for key, values in parse_qs(data or "").items() if values}


async def handle_postback(db: Session, client: LineMessagingClient, event: LineWebhookEvent) -> None:
    params = parse_postback(event.postback.data if event.postback else "")
    action = params.get("action")
    user_id = event.user_id

    if action == "create_repair":
        message = line_templates.render_intake_buttons(user_id)
    elif action == "check_status":
        try:
            page = int(params.get("page", "1"))
        except ValueError:
            page = 1
        message = build_check_status(db, user_id, page)
    elif action == "faq":
        message = line_templates.render_faq()
    elif action == "contact":
        message = line_templates.render_contact()
    else:
        logger.info("Unknown LINE postback action: %s", action)
        return

    await client.reply_or_push(event.replyToken, user_id, [message])


def build_check_status(db: Session, line_user_id: str, page: int) -> dict:
    """Render page ``page`` of the caller's tickets (clamped to the valid range)."""
    page_size = settings.CHECK_STATUS_PAGE_SIZE
    link = line_linking_service.get_verified_link_by_line_user(db, line_user_id)
    linked_user_id = link.user_id if link else None

    _, total = repair_service.list_tickets_for_line_user(
        db, line_user_id, linked_user_id=linked_user_id, limit=1
    )
    if total == 0:
        return line_templates.render_no_tickets()

    total_pages = max(1, math.ceil(total / page_size))
    page = min(max(page, 1), total_pages)
    tickets, _ = repair_service.list_tickets_for_line_user(
        db,
        line_user_id,
        linked_user_id=linked_user_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    items = [
        CheckStatusItem(
            ticket_code=t.ticket_code,
            problem_title=t.problem_title,
            status=t.status.value,
            urgency=t.urgency.value,
            created_at=t.created_at,
        )
        for t in tickets
    ]
    return line_templates.render_check_status(items, page, total_pages)
