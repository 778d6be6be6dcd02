"""LINE Official Account enums."""

from enum import Enum


class LineLinkStatus(str, Enum):
    """State of a user ↔ LINE identity binding."""

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    UNLINKED = "UNLINKED"


class LineNotificationStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class LineNotificationType(str, Enum):
    """Delivery log categories."""

    REPAIR_TICKET_CREATED = "REPAIR_TICKET_CREATED"
    REPAIR_TICKET_ASSIGNED = "REPAIR_TICKET_ASSIGNED"
    REPAIR_TICKET_COMPLETED = "REPAIR_TICKET_COMPLETED"
    REPAIR_TICKET_CANCELLED = "REPAIR_TICKET_CANCELLED"
    REPAIR_STATUS_UPDATE = "REPAIR_STATUS_UPDATE"
    REPAIR_REPORTER_UPDATE = "REPAIR_REPORTER_UPDATE"
    REPAIR_RUSH_REMINDER = "REPAIR_RUSH_REMINDER"


class TechnicianNoticeKind(str, Enum):
    """Why a technician is being notified."""

    ASSIGNED = "ASSIGNED"
    TRANSFERRED = "TRANSFERRED"
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
