"""Exhaustive booking request transition table."""

from __future__ import annotations

from admission.domain.errors import InvalidStateError
from admission.domain.models import BookingStatus


_ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
    ),
    BookingStatus.APPROVED: frozenset({BookingStatus.CONFIRMED, BookingStatus.OVERDUE}),
    # Late payment still confirms; an admin release frees the slot.
    BookingStatus.OVERDUE: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in _ALLOWED_TRANSITIONS.items() if not targets
)


def allowed_targets(current: BookingStatus) -> frozenset[BookingStatus]:
    return _ALLOWED_TRANSITIONS[current]


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    """Raise InvalidStateError when current -> target is not in the table."""
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move booking from {current.value} to {target.value}",
            current_status=current.value,
        )
