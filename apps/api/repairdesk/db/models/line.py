"""LINE Official Account link and delivery log models."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repairdesk.db.base import Base
from repairdesk.db.enums import LineLinkStatus, LineNotificationStatus, LineNotificationType
from repairdesk.db.models._types import enum_column

if TYPE_CHECKING:
    from repairdesk.db.models.users import User


class LineOALink(Base):
    """Binding between an internal user and a LINE identity."""

    __tablename__ = "line_oa_links"
    __table_args__ = (
        Index("idx_line_oa_links_line_user", "line_user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    line_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[LineLinkStatus] = mapped_column(
        enum_column(LineLinkStatus, name="line_link_status"),
        nullable=False,
        default=LineLinkStatus.PENDING,
    )
    verification_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verification_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    picture_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="line_link")


class LineNotification(Base):
    """One row per attempted LINE send per recipient."""

    __tablename__ = "line_notifications"
    __table_args__ = (
        Index("idx_line_notifications_line_user", "line_user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    line_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[LineNotificationType] = mapped_column(
        enum_column(LineNotificationType, name="line_notification_type"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[LineNotificationStatus] = mapped_column(
        enum_column(LineNotificationStatus, name="line_notification_status"), nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
