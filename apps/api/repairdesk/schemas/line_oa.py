"""Pydantic schemas for the LINE webhook and account-linking APIs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from repairdesk.db.enums import LineLinkStatus, LineNotificationStatus, LineNotificationType


# =============================================================================
# Webhook payload
# =============================================================================


class LineEventSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "user"
    userId: str | None = None


class LineMessageContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str
    text: str | None = None


class LinePostbackContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    data: str = ""


class LineWebhookEvent(BaseModel):
    """One event in a webhook batch; unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    type: str
    timestamp: int | None = None
    source: LineEventSource = Field(default_factory=LineEventSource)
    replyToken: str | None = None
    message: LineMessageContent | None = None
    postback: LinePostbackContent | None = None

    @property
    def user_id(self) -> str | None:
        return self.source.userId


class LineWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    destination: str | None = None
    events: list[dict] = Field(default_factory=list)


# =============================================================================
# Linking
# =============================================================================


class LinkingInitiateResponse(BaseModel):
    verification_token: str
    expires_at: datetime
    linking_url: str


class LinkingVerifyRequest(BaseModel):
    verification_token: str = Field(min_length=8)
    line_user_id: str = Field(min_length=1)
    display_name: str | None = None
    picture_url: str | None = None
    force: bool = False


class LinkingStatusResponse(BaseModel):
    is_linked: bool
    status: LineLinkStatus | None = None
    line_user_id: str | None = None
    display_name: str | None = None
    picture_url: str | None = None
    linked_at: datetime | None = None


class LineNotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: LineNotificationType
    title: str
    message: str
    status: LineNotificationStatus
    error_message: str | None = None
    created_at: datetime
