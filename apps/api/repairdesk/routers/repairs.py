"""Repair ticket APIs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session

from repairdesk.core.deps import (
    Actor,
    get_blob_storage,
    get_current_actor,
    get_db,
    get_line_client,
    get_optional_actor,
    require_staff,
)
from repairdesk.core.status_rules import InvalidStatusTransitionError
from repairdesk.db.enums import RepairTicketStatus, UrgencyLevel
from repairdesk.db.models import RepairTicket
from repairdesk.schemas.repairs import (
    RepairAttachmentRead,
    RepairPublicStatus,
    RepairStatistics,
    RepairTicketCancelRequest,
    RepairTicketCreateCommand,
    RepairTicketListItem,
    RepairTicketListResponse,
    RepairTicketRead,
    RepairTicketUpdateCommand,
    RushResult,
)
from repairdesk.services import repair_service
from repairdesk.services.line_api import LineMessagingClient
from repairdesk.services.repair_errors import (
    AttachmentValidationError,
    InvalidAssigneeError,
    RepairServiceError,
    RepairTicketNotFoundError,
)
from repairdesk.services.repair_service import IncomingFile
from repairdesk.services.storage_service import BlobStorage

router = APIRouter(prefix="/repairs", tags=["Repairs"])
logger = logging.getLogger(__name__)


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, RepairTicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidStatusTransitionError, InvalidAssigneeError, AttachmentValidationError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RepairServiceError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")


def _ensure_can_view(ticket: RepairTicket, actor: Actor) -> None:
    if actor.is_staff or ticket.user_id == actor.user_id:
        return
    raise HTTPException(status_code=403, detail="Not allowed to access this ticket")


async def _read_uploads(files: list[UploadFile]) -> list[IncomingFile]:
    incoming = []
    for upload in files:
        if not upload.filename:
            continue
        incoming.append(
            IncomingFile(
                filename=upload.filename,
                content_type=upload.content_type or "application/octet-stream",
                content=await upload.read(),
            )
        )
    return incoming


@router.post("", response_model=RepairTicketRead, status_code=201)
async def create_repair(
    reporter_name: Annotated[str, Form()],
    problem_title: Annotated[str, Form()],
    reporter_department: Annotated[str | None, Form()] = None,
    reporter_phone: Annotated[str | None, Form()] = None,
    reporter_line_id: Annotated[str | None, Form()] = None,
    problem_description: Annotated[str | None, Form()] = None,
    problem_category: Annotated[str | None, Form()] = None,
    location: Annotated[str | None, Form()] = None,
    urgency: Annotated[str | None, Form()] = None,
    line_user_id: Annotated[str | None, Form(alias="lineUserId")] = None,
    files: Annotated[list[UploadFile], File()] = [],
    db: Session = Depends(get_db),
    client: LineMessagingClient = Depends(get_line_client),
    storage: BlobStorage | None = Depends(get_blob_storage),
    actor: Actor | None = Depends(get_optional_actor),
) -> RepairTicketRead:
    """
    File a repair request.

    Open to guests (the intake form passes ``lineUserId``) and to signed-in
    users, whose account becomes the ticket owner.
    """
    fields = {
        "reporter_name": reporter_name,
        "problem_title": problem_title,
        "reporter_department": reporter_department,
        "reporter_phone": reporter_phone,
        "reporter_line_id": reporter_line_id,
        "problem_description": problem_description,
        "location": location,
        "urgency": urgency,
        "user_id": actor.user_id if actor else None,
    }
    if problem_category:
        fields["problem_category"] = problem_category
    try:
        command = RepairTicketCreateCommand(**fields)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))

    try:
        ticket = await repair_service.create_ticket(
            db,
            client,
            command,
            files=await _read_uploads(files),
            line_user_id=line_user_id or None,
            storage=storage,
        )
    except RepairServiceError as exc:
        raise _to_http(exc)
    return RepairTicketRead.model_validate(ticket)


@router.get("", response_model=RepairTicketListResponse)
def list_repairs(
    status: RepairTicketStatus | None = None,
    urgency: UrgencyLevel | None = None,
    assignee_id: int | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_staff),
) -> RepairTicketListResponse:
    items, total = repair_service.list_tickets(
        db, status=status, urgency=urgency, assignee_id=assignee_id, limit=limit, offset=offset
    )
    return RepairTicketListResponse(
        items=[RepairTicketListItem.model_validate(t) for t in items], total=total
    )


@router.get("/my", response_model=RepairTicketListResponse)
def list_my_repairs(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> RepairTicketListResponse:
    items, total = repair_service.list_tickets(
        db, user_id=actor.user_id, limit=limit, offset=offset
    )
    return RepairTicketListResponse(
        items=[RepairTicketListItem.model_validate(t) for t in items], total=total
    )


@router.get("/statistics", response_model=RepairStatistics)
def repair_statistics(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_staff),
) -> RepairStatistics:
    return RepairStatistics(**repair_service.get_statistics(db))


@router.get("/schedule", response_model=list[RepairTicketListItem])
def repair_schedule(
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_staff),
) -> list[RepairTicketListItem]:
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    tickets = repair_service.get_schedule(db, start=start, end=end)
    return [RepairTicketListItem.model_validate(t) for t in tickets]


@router.get("/code/{ticket_code}", response_model=RepairPublicStatus)
def get_repair_by_code(ticket_code: str, db: Session = Depends(get_db)) -> RepairPublicStatus:
    """Public tracking lookup by ticket code."""
    try:
        ticket = repair_service.get_ticket_by_code(db, ticket_code)
    except RepairTicketNotFoundError as exc:
        raise _to_http(exc)
    return RepairPublicStatus.model_validate(ticket)


@router.get("/{ticket_id}", response_model=RepairTicketRead)
def get_repair(
    ticket_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> RepairTicketRead:
    try:
        ticket = repair_service.get_ticket(db, ticket_id)
    except RepairTicketNotFoundError as exc:
        raise _to_http(exc)
    _ensure_can_view(ticket, actor)
    return RepairTicketRead.model_validate(ticket)


@router.patch("/{ticket_id}", response_model=RepairTicketRead)
async def update_repair(
    ticket_id: int,
    data: RepairTicketUpdateCommand,
    db: Session = Depends(get_db),
    client: LineMessagingClient = Depends(get_line_client),
    actor: Actor = Depends(require_staff),
) -> RepairTicketRead:
    try:
        ticket = await repair_service.update_ticket(
            db, client, ticket_id, data, actor_id=actor.user_id
        )
    except (RepairServiceError, InvalidStatusTransitionError) as exc:
        raise _to_http(exc)
    return RepairTicketRead.model_validate(ticket)


@router.post("/{ticket_id}/cancel", response_model=RepairTicketRead)
async def cancel_repair(
    ticket_id: int,
    data: RepairTicketCancelRequest | None = None,
    db: Session = Depends(get_db),
    client: LineMessagingClient = Depends(get_line_client),
    actor: Actor = Depends(get_current_actor),
) -> RepairTicketRead:
    """Cancel a ticket (staff, or the reporter who owns it)."""
    try:
        ticket = repair_service.get_ticket(db, ticket_id)
        _ensure_can_view(ticket, actor)
        ticket = await repair_service.cancel_ticket(
            db, client, ticket_id, actor_id=actor.user_id, reason=data.reason if data else None
        )
    except (RepairServiceError, InvalidStatusTransitionError) as exc:
        raise _to_http(exc)
    return RepairTicketRead.model_validate(ticket)


@router.post("/{ticket_id}/rush", response_model=RushResult)
async def rush_repair(
    ticket_id: int,
    db: Session = Depends(get_db),
    client: LineMessagingClient = Depends(get_line_client),
    actor: Actor = Depends(get_current_actor),
) -> RushResult:
    """Ask the assigned technicians for an update."""
    try:
        ticket = repair_service.get_ticket(db, ticket_id)
    except RepairTicketNotFoundError as exc:
        raise _to_http(exc)
    _ensure_can_view(ticket, actor)
    result = await repair_service.rush_ticket(db, client, ticket_id)
    return RushResult(sent=result.success, recipients=len(result.recipients), reason=result.reason)


@router.post("/{ticket_id}/attachments", response_model=list[RepairAttachmentRead], status_code=201)
async def add_completion_attachments(
    ticket_id: int,
    files: Annotated[list[UploadFile], File()],
    db: Session = Depends(get_db),
    storage: BlobStorage | None = Depends(get_blob_storage),
    actor: Actor = Depends(require_staff),
) -> list[RepairAttachmentRead]:
    """Upload completion photos."""
    try:
        attachments = await repair_service.add_completion_attachments(
            db, ticket_id, await _read_uploads(files), storage=storage
        )
    except RepairServiceError as exc:
        raise _to_http(exc)
    return [RepairAttachmentRead.model_validate(a) for a in attachments]
