"""Repair ticket ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repairdesk.db.base import Base
from repairdesk.db.enums import (
    AssignmentAction,
    AttachmentKind,
    ProblemCategory,
    RepairTicketStatus,
    UrgencyLevel,
)
from repairdesk.db.models._types import enum_column

if TYPE_CHECKING:
    from repairdesk.db.models.users import User


class RepairTicket(Base):
    """
    A repair request.

    ``ticket_code`` is assigned once at creation and never changes.
    ``linking_code`` lets a guest reporter bind a LINE identity later by
    typing the code into the chat.
    """

    __tablename__ = "repair_tickets"
    __table_args__ = (
        Index("idx_repair_tickets_status", "status"),
        Index("idx_repair_tickets_user", "user_id"),
        Index("idx_repair_tickets_reporter_line", "reporter_line_user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    linking_code: Mapped[str | None] = mapped_column(String(48), unique=True, nullable=True)

    status: Mapped[RepairTicketStatus] = mapped_column(
        enum_column(RepairTicketStatus, name="repair_ticket_status"),
        nullable=False,
        default=RepairTicketStatus.PENDING,
    )
    urgency: Mapped[UrgencyLevel] = mapped_column(
        enum_column(UrgencyLevel, name="urgency_level"),
        nullable=False,
        default=UrgencyLevel.NORMAL,
    )

    # Reporter
    reporter_name: Mapped[str] = mapped_column(String(255), nullable=False)
    reporter_department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reporter_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reporter_line_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reporter_line_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Problem
    problem_category: Mapped[ProblemCategory] = mapped_column(
        enum_column(ProblemCategory, name="problem_category"),
        nullable=False,
        default=ProblemCategory.OTHER,
    )
    problem_title: Mapped[str] = mapped_column(String(255), nullable=False)
    problem_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Scheduling
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    estimated_completion_date: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_to_reporter: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user: Mapped[User | None] = relationship(foreign_keys=[user_id])
    assignees: Mapped[list[RepairTicketAssignee]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="RepairTicketAssignee.id",
    )
    history: Mapped[list[RepairAssignmentHistory]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="RepairAssignmentHistory.id",
    )
    attachments: Mapped[list[RepairAttachment]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="RepairAttachment.id",
    )

    @property
    def assignee_ids(self) -> list[int]:
        return [a.user_id for a in self.assignees]

    @property
    def has_line_contact(self) -> bool:
        return bool(self.reporter_line_user_id)


class RepairTicketAssignee(Base):
    """Current assignment of a technician to a ticket."""

    __tablename__ = "repair_ticket_assignees"
    __table_args__ = (
        UniqueConstraint("repair_ticket_id", "user_id", name="uq_repair_assignee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repair_ticket_id: Mapped[int] = mapped_column(
        ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    assigned_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    ticket: Mapped[RepairTicket] = relationship(back_populates="assignees")
    user: Mapped[User] = relationship()


class RepairAssignmentHistory(Base):
    """Append-only ledger of assignment and status actions on a ticket."""

    __tablename__ = "repair_assignment_history"
    __table_args__ = (
        Index("idx_repair_history_ticket", "repair_ticket_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repair_ticket_id: Mapped[int] = mapped_column(
        ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[AssignmentAction] = mapped_column(
        enum_column(AssignmentAction, name="assignment_action"), nullable=False
    )
    assigner_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assignee_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    ticket: Mapped[RepairTicket] = relationship(back_populates="history")


class RepairAttachment(Base):
    """Problem or completion photo stored in blob storage."""

    __tablename__ = "repair_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repair_ticket_id: Mapped[int] = mapped_column(
        ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[AttachmentKind] = mapped_column(
        enum_column(AttachmentKind, name="attachment_kind"),
        nullable=False,
        default=AttachmentKind.PROBLEM,
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    ticket: Mapped[RepairTicket] = relationship(back_populates="attachments")


class RepairTicketCounter(Base):
    """Per-day sequence backing ticket code generation."""

    __tablename__ = "repair_ticket_counters"

    date_key: Mapped[str] = mapped_column(String(32), primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
