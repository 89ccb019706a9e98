"""Domain models for booking admission control and capacity accounting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    OVERDUE = "overdue"


# Statuses that hold one of the accommodation's slots.
SLOT_HOLDING_STATUSES = frozenset(
    {BookingStatus.APPROVED, BookingStatus.CONFIRMED, BookingStatus.OVERDUE}
)


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def target_status(self) -> BookingStatus:
        if self is Decision.APPROVE:
            return BookingStatus.APPROVED
        return BookingStatus.REJECTED


class BookingType(str, Enum):
    ACCOMMODATION = "accommodation"
    PROGRAM = "program"


class AdminStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    COMING_SOON = "coming_soon"
    MAINTENANCE = "maintenance"
    NOT_AVAILABLE = "not_available"

    @property
    def accepts_submissions(self) -> bool:
        return self in (AdminStatus.ACTIVE, AdminStatus.HIDDEN)


class GenderRestriction(str, Enum):
    BROTHERS = "brothers"
    SISTERS = "sisters"
    FAMILY = "family"
    NONE = "none"


class PriceTerm(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ProgramModel(str, Enum):
    QURAN_CLASS = "quran_class"
    LECTURE = "lecture"
    EVENT = "event"


class StatusBucket(str, Enum):
    AVAILABLE = "available"
    HIGH = "high"
    CRITICAL = "critical"
    FULL = "full"


class EscalationLevel(str, Enum):
    NORMAL = "normal"
    GENTLE = "gentle"
    FIRM = "firm"
    FINAL = "final"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Accommodation:
    accommodation_id: int
    title: str
    max_bookings: int
    guest_capacity: int
    gender_restriction: GenderRestriction
    price_term: PriceTerm
    price: int
    admin_status: AdminStatus


@dataclass(frozen=True)
class Program:
    program_id: int
    title: str
    program_model: ProgramModel


@dataclass(frozen=True)
class BookingRequest:
    request_id: int
    booking_type: BookingType
    accommodation_id: Optional[int]
    program_id: Optional[int]
    requester_id: str
    check_in: Optional[date]
    check_out: Optional[date]
    number_of_guests: int
    status: BookingStatus
    created_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    admin_notes: Optional[str] = None
    payment_due_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    overdue_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    released_by: Optional[str] = None

    @property
    def holds_slot(self) -> bool:
        return (
            self.booking_type is BookingType.ACCOMMODATION
            and self.status in SLOT_HOLDING_STATUSES
        )

    @property
    def target_id(self) -> int:
        """Accommodation id for stays, program id for enrollments."""
        if self.booking_type is BookingType.ACCOMMODATION:
            target = self.accommodation_id
        else:
            target = self.program_id
        if target is None:
            raise RuntimeError(
                f"Booking request {self.request_id} has no {self.booking_type.value} id"
            )
        return target


@dataclass(frozen=True)
class LedgerCounts:
    accommodation_id: int
    approved_count: int
    pending_count: int
    total_count: int
    updated_at: Optional[datetime] = None

    def same_counts(self, other: Optional["LedgerCounts"]) -> bool:
        """Counter equality, ignoring `updated_at`."""
        if other is None:
            return False
        return (
            self.approved_count == other.approved_count
            and self.pending_count == other.pending_count
            and self.total_count == other.total_count
        )


@dataclass(frozen=True)
class OverdueBooking:
    request: BookingRequest
    days_past_due: int
    escalation_level: EscalationLevel


@dataclass(frozen=True)
class OccupancySnapshot:
    accommodation_id: int
    max_bookings: int
    approved_count: int
    pending_count: int
    total_count: int
    occupancy_rate: float
    available_slots: int
    status_bucket: StatusBucket
    overbooked_by: int

    @property
    def can_accept_bookings(self) -> bool:
        return self.available_slots > 0


@dataclass(frozen=True)
class AccommodationBooking:
    """Submission for one slot of an accommodation."""

    accommodation_id: int
    requester_id: str
    check_in: date
    check_out: date
    number_of_guests: int


@dataclass(frozen=True)
class ProgramEnrollment:
    """Submission for a seat in a program; programs carry no capacity ledger."""

    program_id: int
    requester_id: str


Submission = Union[AccommodationBooking, ProgramEnrollment]


@dataclass(frozen=True)
class TransitionEvent:
    """Published to listeners after a transition has committed."""

    request: BookingRequest
    previous_status: Optional[BookingStatus]
    actor_id: Optional[str]
