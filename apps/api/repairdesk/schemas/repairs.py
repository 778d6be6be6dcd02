"""Pydantic schemas for repair ticket APIs and workflow commands."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from repairdesk.db.enums import (
    AssignmentAction,
    AttachmentKind,
    ProblemCategory,
    RepairTicketStatus,
    Role,
    UrgencyLevel,
)


# =============================================================================
# Commands
# =============================================================================


class RepairTicketCreateCommand(BaseModel):
    """
    Everything needed to file a ticket.

    Defaults are applied here once; the workflow never re-derives them.
    """

    reporter_name: str = Field(min_length=1, max_length=255)
    reporter_department: str | None = None
    reporter_phone: str | None = None
    reporter_line_id: str | None = None
    problem_title: str = Field(min_length=1, max_length=255)
    problem_description: str | None = None
    problem_category: ProblemCategory = ProblemCategory.OTHER
    location: str | None = None
    urgency: UrgencyLevel = UrgencyLevel.NORMAL
    user_id: int | None = None

    @field_validator("problem_category", mode="before")
    @classmethod
    def _unknown_category_is_other(cls, value):
        if isinstance(value, str) and value.upper() not in ProblemCategory._value2member_map_:
            return ProblemCategory.OTHER
        return value.upper() if isinstance(value, str) else value

    @field_validator("urgency", mode="before")
    @classmethod
    def _unknown_urgency_is_normal(cls, value):
        if value is None or (
            isinstance(value, str) and value.upper() not in UrgencyLevel._value2member_map_
        ):
            return UrgencyLevel.NORMAL
        return value.upper() if isinstance(value, str) else value


class RepairTicketUpdateCommand(BaseModel):
    """
    Partial update. Only fields the caller sent are applied
    (``model_fields_set``); ``assignee_ids`` replaces the whole set.
    """

    status: RepairTicketStatus | None = None
    urgency: UrgencyLevel | None = None
    problem_category: ProblemCategory | None = None
    problem_title: str | None = None
    problem_description: str | None = None
    location: str | None = None
    assignee_ids: list[int] | None = None
    notes: str | None = None
    message_to_reporter: str | None = None
    scheduled_at: datetime | None = None
    estimated_completion_date: datetime | None = None

    @field_validator("assignee_ids")
    @classmethod
    def _dedupe_assignees(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        return list(dict.fromkeys(value))


class RepairTicketCancelRequest(BaseModel):
    reason: str | None = None


# =============================================================================
# Responses
# =============================================================================


class UserBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: Role


class RepairAssigneeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    assigned_at: datetime | None = None
    user: UserBrief | None = None


class RepairAttachmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: AttachmentKind
    filename: str
    file_url: str
    file_size: int
    mime_type: str
    created_at: datetime | None = None


class RepairHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: AssignmentAction
    assigner_id: int | None = None
    assignee_id: int | None = None
    from_status: str | None = None
    to_status: str | None = None
    note: str | None = None
    created_at: datetime | None = None


class RepairTicketListItem(BaseModel):
    """Queue row for a repair ticket."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_code: str
    status: RepairTicketStatus
    urgency: UrgencyLevel
    problem_category: ProblemCategory
    problem_title: str
    reporter_name: str
    reporter_department: str | None = None
    location: str | None = None
    assignee_ids: list[int] = Field(default_factory=list)
    scheduled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RepairTicketRead(RepairTicketListItem):
    """Full repair ticket detail."""

    linking_code: str | None = None
    reporter_phone: str | None = None
    reporter_line_id: str | None = None
    has_line_contact: bool = False
    user_id: int | None = None
    problem_description: str | None = None
    notes: str | None = None
    message_to_reporter: str | None = None
    estimated_completion_date: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    assignees: list[RepairAssigneeRead] = Field(default_factory=list)
    attachments: list[RepairAttachmentRead] = Field(default_factory=list)
    history: list[RepairHistoryRead] = Field(default_factory=list)


class RepairTicketListResponse(BaseModel):
    items: list[RepairTicketListItem]
    total: int


class RepairStatistics(BaseModel):
    total: int
    by_status: dict[str, int]
    by_urgency: dict[str, int]


class RepairPublicStatus(BaseModel):
    """What anyone holding a ticket code may see."""

    model_config = ConfigDict(from_attributes=True)

    ticket_code: str
    status: RepairTicketStatus
    urgency: UrgencyLevel
    problem_title: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    message_to_reporter: str | None = None


class RushResult(BaseModel):
    sent: bool
    recipients: int
    reason: str | None = None
