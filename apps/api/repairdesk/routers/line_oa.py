"""LINE Official Account router: webhook, account linking and delivery history."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from repairdesk.core.config import settings
from repairdesk.core.deps import Actor, get_current_actor, get_db, get_line_client, require_staff
from repairdesk.schemas.line_oa import (
    LineNotificationRead,
    LineWebhookPayload,
    LinkingInitiateResponse,
    LinkingStatusResponse,
    LinkingVerifyRequest,
)
from repairdesk.services import line_linking_service, line_notification_service, line_webhook_service
from repairdesk.services.line_api import LineApiError, LineMessagingClient, verify_signature
from repairdesk.services.line_linking_service import AccountAlreadyLinkedError, LinkingError, LinkNotFoundError

router = APIRouter(prefix="/line-oa", tags=["LINE OA"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-line-signature"


@router.post("/webhook")
async def receive_line_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: LineMessagingClient = Depends(get_line_client),
):
    """
    Receive a LINE webhook batch.

    Security:
    - Validates payload size
    - Validates x-line-signature over the raw body before parsing

    Once the signature passes the response is always 200; LINE would
    otherwise redeliver the whole batch.
    """
    # 1. Check payload size
    content_length = request.headers.get("content-length", "0")
    try:
        if int(content_length) > settings.LINE_WEBHOOK_MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
    except ValueError:
        pass

    # 2. Verify signature on the exact bytes received
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not verify_signature(body, signature):
        logger.warning("LINE webhook rejected: invalid or missing signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    # 3. Parse and dispatch
    try:
        payload = LineWebhookPayload.model_validate(json.loads(body or b"{}"))
    except ValueError:
        logger.warning("LINE webhook body is not a valid event batch")
        return {"message": "Webhook processed"}

    handled = await line_webhook_service.handle_events(db, client, payload.events)
    logger.info("LINE webhook processed %s/%s event(s)", handled, len(payload.events))
    return {"message": "Webhook processed"}


# =============================================================================
# Account linking
# =============================================================================


@router.post("/linking/initiate", response_model=LinkingInitiateResponse)
def initiate_linking(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LinkingInitiateResponse:
    try:
        invite = line_linking_service.initiate_linking(db, actor.user_id)
    except AccountAlreadyLinkedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return LinkingInitiateResponse(
        verification_token=invite.verification_token,
        expires_at=invite.expires_at,
        linking_url=invite.linking_url,
    )


@router.post("/linking/verify", response_model=LinkingStatusResponse)
def verify_linking(
    data: LinkingVerifyRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LinkingStatusResponse:
    try:
        line_linking_service.verify_link(
            db,
            actor.user_id,
            line_user_id=data.line_user_id,
            verification_token=data.verification_token,
            display_name=data.display_name,
            picture_url=data.picture_url,
            force=data.force,
        )
    except LinkingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return LinkingStatusResponse(**line_linking_service.get_linking_status(db, actor.user_id))


@router.get("/linking/status", response_model=LinkingStatusResponse)
def linking_status(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LinkingStatusResponse:
    return LinkingStatusResponse(**line_linking_service.get_linking_status(db, actor.user_id))


@router.delete("/linking")
def unlink(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        line_linking_service.unlink_account(db, actor.user_id)
    except LinkNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"message": "LINE account unlinked"}


# =============================================================================
# Delivery history / health
# =============================================================================


@router.get("/notifications", response_model=list[LineNotificationRead])
def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[LineNotificationRead]:
    """LINE messages sent to the caller's linked account."""
    line_user_id = line_notification_service.get_verified_line_user_id(db, actor.user_id)
    if not line_user_id:
        return []
    rows = line_notification_service.list_notifications(db, line_user_id, limit=limit)
    return [LineNotificationRead.model_validate(row) for row in rows]


@router.get("/health")
async def line_health(
    client: LineMessagingClient = Depends(get_line_client),
    actor: Actor = Depends(require_staff),
):
    """Check that the configured access token reaches the bot."""
    try:
        info = await client.get_bot_info()
    except LineApiError as exc:
        logger.warning("LINE connection check failed: %s", exc)
        raise HTTPException(status_code=503, detail="LINE API unreachable")
    return {
        "status": "ok",
        "bot": {
            "display_name": info.get("displayName"),
            "basic_id": info.get("basicId"),
        },
    }
