"""Repair workflow exceptions.

Routers translate these into HTTP responses; services never raise HTTPException.
"""

from repairdesk.core.status_rules import InvalidStatusTransitionError


class RepairServiceError(Exception):
    """Base exception for the repair workflow."""
    pass


class RepairTicketNotFoundError(RepairServiceError):
    """Ticket id or code does not exist."""
    pass


class InvalidAssigneeError(RepairServiceError):
    """One or more assignee ids do not reference an existing active user."""

    def __init__(self, missing_ids):
        self.missing_ids = sorted(missing_ids)
        super().__init__(f"Unknown assignee ids: {self.missing_ids}")


class AttachmentValidationError(RepairServiceError):
    """Uploaded file is not an allowed image or is too large."""
    pass


class InvalidLinkingCodeError(RepairServiceError):
    """Linking code is unknown or already bound to another LINE identity."""
    pass


class TicketCodeGenerationError(RepairServiceError):
    """Could not allocate a unique ticket code after retries."""
    pass


class UnknownReporterError(RepairServiceError):
    """Reporter account id does not reference an existing user."""

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Reporter account {user_id} does not exist")


__all__ = [
    "AttachmentValidationError",
    "InvalidAssigneeError",
    "InvalidLinkingCodeError",
    "InvalidStatusTransitionError",
    "RepairServiceError",
    "RepairTicketNotFoundError",
    "TicketCodeGenerationError",
    "UnknownReporterError",
]
