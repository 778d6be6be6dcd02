"""Repair ticket enums."""

from enum import Enum


class RepairTicketStatus(str, Enum):
    """
    Repair ticket lifecycle.

    PENDING → ASSIGNED → IN_PROGRESS ⇄ WAITING_PARTS → COMPLETED
    Any non-terminal state may move to CANCELLED.
    """

    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_PARTS = "WAITING_PARTS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = (RepairTicketStatus.COMPLETED, RepairTicketStatus.CANCELLED)


class UrgencyLevel(str, Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class ProblemCategory(str, Enum):
    HARDWARE = "HARDWARE"
    SOFTWARE = "SOFTWARE"
    NETWORK = "NETWORK"
    PERIPHERAL = "PERIPHERAL"
    EMAIL_OFFICE365 = "EMAIL_OFFICE365"
    ACCOUNT_PASSWORD = "ACCOUNT_PASSWORD"
    OTHER = "OTHER"


class AssignmentAction(str, Enum):
    """Ledger entry kinds for repair assignment history."""

    ASSIGN = "ASSIGN"
    UNASSIGN = "UNASSIGN"
    STATUS_CHANGE = "STATUS_CHANGE"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    NOTE = "NOTE"
    MESSAGE_TO_REPORTER = "MESSAGE_TO_REPORTER"


class AttachmentKind(str, Enum):
    PROBLEM = "PROBLEM"
    COMPLETION = "COMPLETION"
