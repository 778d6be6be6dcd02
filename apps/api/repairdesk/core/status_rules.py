"""Repair ticket status transition rules."""

from __future__ import annotations

from repairdesk.db.enums import AssignmentAction, RepairTicketStatus

S = RepairTicketStatus

TRANSITIONS: dict[RepairTicketStatus, frozenset[RepairTicketStatus]] = {
    S.PENDING: frozenset({S.ASSIGNED, S.IN_PROGRESS, S.CANCELLED}),
    S.ASSIGNED: frozenset({S.PENDING, S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.WAITING_PARTS, S.COMPLETED, S.CANCELLED}),
    S.WAITING_PARTS: frozenset({S.IN_PROGRESS, S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}


class InvalidStatusTransitionError(ValueError):
    """Requested status move is not in the transition table."""

    def __init__(self, from_status: RepairTicketStatus, to_status: RepairTicketStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot change status from {from_status.value} to {to_status.value}"
        )


def _coerce(status: RepairTicketStatus | str) -> RepairTicketStatus:
    return status if isinstance(status, RepairTicketStatus) else RepairTicketStatus(status)


def is_terminal(status: RepairTicketStatus | str) -> bool:
    return not TRANSITIONS[_coerce(status)]


def validate_transition(
    from_status: RepairTicketStatus | str, to_status: RepairTicketStatus | str
) -> bool:
    """Return True when moving ``from_status`` → ``to_status`` is allowed.

    Staying in the same state is always allowed, including terminal states.
    """
    current = _coerce(from_status)
    target = _coerce(to_status)
    if current == target:
        return True
    return target in TRANSITIONS[current]


def ensure_transition(
    from_status: RepairTicketStatus | str, to_status: RepairTicketStatus | str
) -> None:
    """Raise InvalidStatusTransitionError unless the move is allowed."""
    if not validate_transition(from_status, to_status):
        raise InvalidStatusTransitionError(_coerce(from_status), _coerce(to_status))


def classify_transition(
    from_status: RepairTicketStatus | str, to_status: RepairTicketStatus | str
) -> AssignmentAction:
    """Ledger action for a status move: technician accept/reject or a plain change."""
    current = _coerce(from_status)
    target = _coerce(to_status)
    if current == S.ASSIGNED and target == S.IN_PROGRESS:
        return AssignmentAction.ACCEPT
    if current == S.ASSIGNED and target == S.PENDING:
        return AssignmentAction.REJECT
    return AssignmentAction.STATUS_CHANGE
