"""Error taxonomy raised by the admission core.

Every error is recoverable by the caller. A failing operation aborts its
transaction, so no partial state survives the raise.
"""

from __future__ import annotations


class AdmissionError(Exception):
    """Base class for all admission-control failures."""

    code = "admission_error"


class ValidationError(AdmissionError):
    """Raised for bad input before any row is written."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(AdmissionError):
    """Raised for an unknown accommodation, program or booking request."""

    code = "not_found"


class InvalidStateError(AdmissionError):
    """Raised when a transition is not legal from the current status."""

    code = "invalid_state"

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class AlreadyDecidedError(InvalidStateError):
    """Raised when the same decision is retried on an already-decided request."""

    code = "already_decided"


class CapacityExceededError(AdmissionError):
    """Raised when an approval lost the race for the last free slot."""

    code = "capacity_exceeded"

    def __init__(self, accommodation_id: int, approved_count: int, max_bookings: int) -> None:
        super().__init__(
            "Slot no longer available: "
            f"{approved_count}/{max_bookings} slots are already approved"
        )
        self.accommodation_id = accommodation_id
        self.approved_count = approved_count
        self.max_bookings = max_bookings
