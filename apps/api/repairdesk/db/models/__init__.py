"""SQLAlchemy ORM models."""

from repairdesk.db.models.line import LineNotification, LineOALink
from repairdesk.db.models.repairs import (
    RepairAssignmentHistory,
    RepairAttachment,
    RepairTicket,
    RepairTicketAssignee,
    RepairTicketCounter,
)
from repairdesk.db.models.users import User

__all__ = [
    "LineNotification",
    "LineOALink",
    "RepairAssignmentHistory",
    "RepairAttachment",
    "RepairTicket",
    "RepairTicketAssignee",
    "RepairTicketCounter",
    "User",
]
