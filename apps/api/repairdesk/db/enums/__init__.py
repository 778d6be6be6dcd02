"""Enum definitions for application constants."""

from repairdesk.db.enums.auth import STAFF_ROLES, Role
from repairdesk.db.enums.line import (
    LineLinkStatus,
    LineNotificationStatus,
    LineNotificationType,
    TechnicianNoticeKind,
)
from repairdesk.db.enums.repairs import (
    TERMINAL_STATUSES,
    AssignmentAction,
    AttachmentKind,
    ProblemCategory,
    RepairTicketStatus,
    UrgencyLevel,
)

__all__ = [
    "STAFF_ROLES",
    "TERMINAL_STATUSES",
    "AssignmentAction",
    "AttachmentKind",
    "LineLinkStatus",
    "LineNotificationStatus",
    "LineNotificationType",
    "ProblemCategory",
    "RepairTicketStatus",
    "Role",
    "TechnicianNoticeKind",
    "UrgencyLevel",
]
