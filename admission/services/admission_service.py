"""Admission control: the booking state machine and its capacity guard."""

from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from threading import Lock
from typing import Callable, Optional

from admission.domain.constraints import (
    AdmissionConfig,
    build_admission_config,
    classify_escalation,
    validate_admission_config,
    validate_requester_id,
    validate_stay,
)
from admission.domain.errors import (
    AlreadyDecidedError,
    CapacityExceededError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from admission.domain.models import (
    Accommodation,
    AccommodationBooking,
    BookingRequest,
    BookingStatus,
    BookingType,
    Decision,
    EscalationLevel,
    LedgerCounts,
    OverdueBooking,
    ProgramEnrollment,
    Submission,
    TransitionEvent,
)
from admission.domain.transitions import validate_transition
from admission.repository.booking_store import BookingRequestStore
from admission.repository.capacity_ledger import CapacityLedger
from admission.repository.data_repository import DataRepository
from admission.utils.config import Settings, get_settings
from admission.utils.logger import booking_logger, get_logger
from admission.utils.timeutils import ensure_utc, utc_now


logger = get_logger(__name__)

TransitionListener = Callable[[TransitionEvent], None]

# Statuses a request can only reach through an admin decision.
_DECIDED_STATUSES = frozenset(
    {
        BookingStatus.APPROVED,
        BookingStatus.REJECTED,
        BookingStatus.CONFIRMED,
        BookingStatus.OVERDUE,
    }
)


@dataclass(frozen=True)
class BookingPage:
    items: list[BookingRequest]
    total: int
    page: int
    limit: int
    status_counts: Optional[dict[BookingStatus, int]] = None

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass(frozen=True)
class OverdueReport:
    items: list[OverdueBooking] = field(default_factory=list)

    @property
    def escalation_breakdown(self) -> dict[EscalationLevel, int]:
        breakdown = {level: 0 for level in EscalationLevel}
        for item in self.items:
            breakdown[item.escalation_level] += 1
        return breakdown

    @property
    def average_days_overdue(self) -> int:
        if not self.items:
            return 0
        return round(sum(item.days_past_due for item in self.items) / len(self.items))


class AdmissionService:
    """The only component that changes booking status or ledger counters.

    Each mutation is one `BEGIN IMMEDIATE` transaction taken under a lock
    keyed by the booking's accommodation (or program), so decisions on the
    same accommodation are serialized and different accommodations proceed
    independently. Listeners run after commit, outside the lock.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        booking_store: Optional[BookingRequestStore] = None,
        ledger: Optional[CapacityLedger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._store = booking_store or BookingRequestStore(self._repository)
        self._ledger = ledger or CapacityLedger(self._repository)
        self._clock = clock
        self._config: AdmissionConfig = build_admission_config(self._settings)
        validate_admission_config(self._config)
        self._locks: dict[tuple[BookingType, int], Lock] = {}
        self._locks_guard = Lock()
        self._listeners: list[TransitionListener] = []

    @property
    def ledger(self) -> CapacityLedger:
        return self._ledger

    @property
    def booking_store(self) -> BookingRequestStore:
        return self._store

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _lock_for(self, booking_type: BookingType, target_id: int) -> Lock:
        key = (booking_type, target_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def _lock_for_request(self, request: BookingRequest) -> Lock:
        return self._lock_for(request.booking_type, request.target_id)

    def _publish(self, event: TransitionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pragma: no cover - listener isolation
                logger.exception(
                    "Transition listener failed for request %s",
                    event.request.request_id,
                )

    def _require_request(
        self,
        request_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> BookingRequest:
        request = self._store.get(request_id, conn=conn)
        if request is None:
            raise NotFoundError(f"Booking request {request_id} not found")
        return request

    def _require_bookable_accommodation(self, accommodation_id: int) -> Accommodation:
        accommodation = self._repository.get_accommodation(accommodation_id)
        if accommodation is None:
            raise NotFoundError(f"Accommodation {accommodation_id} not found")
        if not accommodation.admin_status.accepts_submissions:
            raise NotFoundError(
                f"Accommodation {accommodation_id} is not accepting bookings "
                f"({accommodation.admin_status.value})"
            )
        return accommodation

    # Submission ---------------------------------------------------------

    def submit(self, submission: Submission) -> BookingRequest:
        if isinstance(submission, AccommodationBooking):
            return self.submit_request(
                accommodation_id=submission.accommodation_id,
                requester_id=submission.requester_id,
                check_in=submission.check_in,
                check_out=submission.check_out,
                guests=submission.number_of_guests,
            )
        if isinstance(submission, ProgramEnrollment):
            return self.submit_enrollment(
                program_id=submission.program_id,
                requester_id=submission.requester_id,
            )
        raise ValidationError("Unsupported booking type", field="booking_type")

    def submit_request(
        self,
        accommodation_id: int,
        requester_id: str,
        check_in: date,
        check_out: date,
        guests: int,
    ) -> BookingRequest:
        """Persist a pending request; capacity is not checked until approval."""
        requester_id = validate_requester_id(requester_id)
        accommodation = self._require_bookable_accommodation(accommodation_id)
        validate_stay(
            check_in=check_in,
            check_out=check_out,
            number_of_guests=guests,
            guest_capacity=accommodation.guest_capacity,
            today=self._clock().date(),
        )

        with self._lock_for(BookingType.ACCOMMODATION, accommodation_id):
            with self._repository.transaction() as conn:
                if self._store.has_active_request(
                    conn, requester_id, accommodation_id=accommodation_id
                ):
                    raise ValidationError(
                        "You already have an active booking for this accommodation",
                        field="accommodation_id",
                    )
                created = self._store.insert(
                    conn,
                    booking_type=BookingType.ACCOMMODATION,
                    requester_id=requester_id,
                    accommodation_id=accommodation_id,
                    check_in=check_in,
                    check_out=check_out,
                    number_of_guests=guests,
                )
                self._ledger.apply_delta(conn, accommodation_id, "pending_count", 1)
                self._ledger.apply_delta(conn, accommodation_id, "total_count", 1)
                self._repository.record_transition(
                    conn, created.request_id, None, BookingStatus.PENDING, requester_id
                )

        booking_logger(logger, created.request_id, accommodation_id).info(
            "Booking request submitted by %s", requester_id
        )
        self._publish(TransitionEvent(request=created, previous_status=None, actor_id=requester_id))
        return created

    def submit_enrollment(self, program_id: int, requester_id: str) -> BookingRequest:
        requester_id = validate_requester_id(requester_id)
        if self._repository.get_program(program_id) is None:
            raise NotFoundError(f"Program {program_id} not found")

        with self._lock_for(BookingType.PROGRAM, program_id):
            with self._repository.transaction() as conn:
                if self._store.has_active_request(conn, requester_id, program_id=program_id):
                    raise ValidationError(
                        "You already have a pending or approved enrollment for this program",
                        field="program_id",
                    )
                created = self._store.insert(
                    conn,
                    booking_type=BookingType.PROGRAM,
                    requester_id=requester_id,
                    program_id=program_id,
                )
                self._repository.record_transition(
                    conn, created.request_id, None, BookingStatus.PENDING, requester_id
                )

        logger.info(
            "Program enrollment %s submitted by %s for program %s",
            created.request_id,
            requester_id,
            program_id,
        )
        self._publish(TransitionEvent(request=created, previous_status=None, actor_id=requester_id))
        return created

    # Decisions ----------------------------------------------------------

    def decide(
        self,
        request_id: int,
        decision: Decision | str,
        admin_id: str,
        admin_notes: Optional[str] = None,
        force: bool = False,
    ) -> BookingRequest:
        """Approve or reject a pending request.

        Approval re-checks capacity against the ledger row inside the same
        transaction that flips the status. `force=True` is the explicit admin
        override that allows exceeding `max_bookings`.
        """
        try:
            decision = Decision(decision)
        except ValueError as exc:
            raise ValidationError("decision must be 'approve' or 'reject'", field="decision") from exc

        snapshot = self._require_request(request_id)
        with self._lock_for_request(snapshot):
            with self._repository.transaction() as conn:
                request = self._require_request(request_id, conn=conn)
                self._ensure_pending_for_decision(request, decision)
                target = decision.target_status
                validate_transition(request.status, target)

                now = self._clock()
                fields: dict[str, object] = {
                    "decided_at": now,
                    "decided_by": admin_id,
                    "admin_notes": admin_notes,
                }
                if request.booking_type is BookingType.ACCOMMODATION:
                    if decision is Decision.APPROVE:
                        self._reserve_slot(conn, request, force=force)
                        fields["payment_due_at"] = now + timedelta(
                            days=self._config.payment_deadline_days
                        )
                    else:
                        self._adjust_counter(conn, request, "pending_count", -1)

                if not self._store.update_status(
                    conn, request_id, BookingStatus.PENDING, target, **fields
                ):
                    raise InvalidStateError(
                        f"Booking request {request_id} changed state concurrently",
                        current_status=request.status.value,
                    )
                self._repository.record_transition(
                    conn, request_id, BookingStatus.PENDING, target, admin_id
                )
                updated = self._require_request(request_id, conn=conn)

        booking_logger(logger, request_id, updated.accommodation_id).info(
            "Booking %s by %s", target.value, admin_id
        )
        self._publish(
            TransitionEvent(request=updated, previous_status=BookingStatus.PENDING, actor_id=admin_id)
        )
        return updated

    def _ensure_pending_for_decision(self, request: BookingRequest, decision: Decision) -> None:
        if request.status is BookingStatus.PENDING:
            return
        if request.status in _DECIDED_STATUSES:
            raise AlreadyDecidedError(
                f"Booking request {request.request_id} was already decided "
                f"({request.status.value}); {decision.value} ignored",
                current_status=request.status.value,
            )
        raise InvalidStateError(
            f"Booking request {request.request_id} is {request.status.value} and cannot be decided",
            current_status=request.status.value,
        )

    def _heal_ledger(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
        log,
        action: str,
    ) -> LedgerCounts:
        """Overwrite the ledger row with a recount of the booking rows."""
        stored = self._ledger.get(accommodation_id, conn=conn)
        healed = self._ledger.recount(conn, accommodation_id)
        log.warning(
            "Ledger drift detected during %s (stored=%s, recount=%s); healing",
            action,
            stored,
            healed,
        )
        self._ledger.overwrite(conn, healed)
        return healed

    def _adjust_counter(
        self,
        conn: sqlite3.Connection,
        request: BookingRequest,
        counter: str,
        delta: int,
    ) -> None:
        """Apply a ledger delta for a request whose row is not yet updated.

        A refused delta means the stored counter drifted from the rows; the
        recount still includes this request, so the retry cannot be refused.
        """
        accommodation_id = request.target_id
        if self._ledger.try_apply_delta(conn, accommodation_id, counter, delta):
            return
        log = booking_logger(logger, request.request_id, accommodation_id)
        self._heal_ledger(conn, accommodation_id, log, f"{counter}{delta:+d}")
        self._ledger.apply_delta(conn, accommodation_id, counter, delta)

    def _reserve_slot(self, conn: sqlite3.Connection, request: BookingRequest, force: bool) -> None:
        accommodation_id = request.target_id
        log = booking_logger(logger, request.request_id, accommodation_id)

        if self._ledger.try_reserve_slot(conn, accommodation_id, force=force):
            if force:
                self._warn_if_forced_over_capacity(conn, accommodation_id, log)
            return

        accommodation = self._repository.get_accommodation(accommodation_id, conn=conn)
        if accommodation is None:
            raise NotFoundError(f"Accommodation {accommodation_id} not found")
        counts = self._ledger.get(accommodation_id, conn=conn)
        if counts is not None and not force and counts.approved_count + 1 > accommodation.max_bookings:
            log.warning(
                "Approval refused: %s/%s slots already approved",
                counts.approved_count,
                accommodation.max_bookings,
            )
            raise CapacityExceededError(
                accommodation_id=accommodation_id,
                approved_count=counts.approved_count,
                max_bookings=accommodation.max_bookings,
            )

        # Capacity is free but the pending counter disagrees with the rows.
        healed = self._heal_ledger(conn, accommodation_id, log, "approval")
        if self._ledger.try_reserve_slot(conn, accommodation_id, force=force):
            if force:
                self._warn_if_forced_over_capacity(conn, accommodation_id, log)
            return
        raise CapacityExceededError(
            accommodation_id=accommodation_id,
            approved_count=healed.approved_count,
            max_bookings=accommodation.max_bookings,
        )

    def _warn_if_forced_over_capacity(self, conn: sqlite3.Connection, accommodation_id: int, log) -> None:
        accommodation = self._repository.get_accommodation(accommodation_id, conn=conn)
        counts = self._ledger.get(accommodation_id, conn=conn)
        if accommodation is not None and counts is not None and counts.approved_count > accommodation.max_bookings:
            log.warning(
                "Forced approval exceeds capacity: %s/%s",
                counts.approved_count,
                accommodation.max_bookings,
            )

    def cancel(self, request_id: int, requester_id: str) -> BookingRequest:
        """Requester withdraws a request that has not been decided yet."""
        snapshot = self._require_request(request_id)
        if snapshot.requester_id != requester_id:
            raise NotFoundError(f"Booking request {request_id} not found")

        with self._lock_for_request(snapshot):
            with self._repository.transaction() as conn:
                request = self._require_request(request_id, conn=conn)
                if request.status is not BookingStatus.PENDING:
                    raise InvalidStateError(
                        f"Only pending requests can be cancelled; request is {request.status.value}",
                        current_status=request.status.value,
                    )
                if request.booking_type is BookingType.ACCOMMODATION:
                    self._adjust_counter(conn, request, "pending_count", -1)
                if not self._store.update_status(
                    conn, request_id, BookingStatus.PENDING, BookingStatus.CANCELLED
                ):
                    raise InvalidStateError(
                        f"Booking request {request_id} changed state concurrently",
                        current_status=request.status.value,
                    )
                self._repository.record_transition(
                    conn, request_id, BookingStatus.PENDING, BookingStatus.CANCELLED, requester_id
                )
                updated = self._require_request(request_id, conn=conn)

        booking_logger(logger, request_id, updated.accommodation_id).info(
            "Booking cancelled by requester %s", requester_id
        )
        self._publish(
            TransitionEvent(request=updated, previous_status=BookingStatus.PENDING, actor_id=requester_id)
        )
        return updated

    # Payment-driven transitions ----------------------------------------

    def confirm(self, request_id: int, actor_id: str = "payment_gate") -> BookingRequest:
        """Approved (or overdue) booking becomes confirmed once payment is verified."""
        snapshot = self._require_request(request_id)
        if snapshot.status is BookingStatus.CONFIRMED:
            return snapshot

        with self._lock_for_request(snapshot):
            with self._repository.transaction() as conn:
                request = self._require_request(request_id, conn=conn)
                if request.status is BookingStatus.CONFIRMED:
                    return request
                validate_transition(request.status, BookingStatus.CONFIRMED)
                previous = request.status
                # Both approved and overdue already hold the slot.
                self._store.update_status(
                    conn,
                    request_id,
                    previous,
                    BookingStatus.CONFIRMED,
                    confirmed_at=self._clock(),
                )
                self._repository.record_transition(
                    conn, request_id, previous, BookingStatus.CONFIRMED, actor_id
                )
                updated = self._require_request(request_id, conn=conn)

        booking_logger(logger, request_id, updated.accommodation_id).info(
            "Booking confirmed after verified payment (was %s)", previous.value
        )
        self._publish(TransitionEvent(request=updated, previous_status=previous, actor_id=actor_id))
        return updated

    def mark_overdue(
        self,
        request_id: int,
        now: Optional[datetime] = None,
        actor_id: str = "payment_gate",
    ) -> BookingRequest:
        """Approved booking whose payment deadline elapsed unpaid; the slot is kept."""
        snapshot = self._require_request(request_id)
        if snapshot.status is BookingStatus.OVERDUE:
            return snapshot
        effective_now = ensure_utc(now or self._clock())

        with self._lock_for_request(snapshot):
            with self._repository.transaction() as conn:
                request = self._require_request(request_id, conn=conn)
                if request.status is BookingStatus.OVERDUE:
                    return request
                if request.status is not BookingStatus.APPROVED:
                    raise InvalidStateError(
                        f"Only approved bookings can become overdue; request is {request.status.value}",
                        current_status=request.status.value,
                    )
                if request.payment_due_at is None or request.payment_due_at > effective_now:
                    raise InvalidStateError(
                        f"Payment deadline for booking request {request_id} has not elapsed",
                        current_status=request.status.value,
                    )
                self._store.update_status(
                    conn,
                    request_id,
                    BookingStatus.APPROVED,
                    BookingStatus.OVERDUE,
                    overdue_at=effective_now,
                )
                self._repository.record_transition(
                    conn, request_id, BookingStatus.APPROVED, BookingStatus.OVERDUE, actor_id
                )
                updated = self._require_request(request_id, conn=conn)

        booking_logger(logger, request_id, updated.accommodation_id).info(
            "Booking marked overdue (due %s)", updated.payment_due_at
        )
        self._publish(
            TransitionEvent(request=updated, previous_status=BookingStatus.APPROVED, actor_id=actor_id)
        )
        return updated

    def release_overdue(self, request_id: int, admin_id: str) -> BookingRequest:
        """Admin frees the slot held by an overdue booking."""
        snapshot = self._require_request(request_id)
        with self._lock_for_request(snapshot):
            with self._repository.transaction() as conn:
                request = self._require_request(request_id, conn=conn)
                if request.status is not BookingStatus.OVERDUE:
                    raise InvalidStateError(
                        f"Only overdue bookings can be released; request is {request.status.value}",
                        current_status=request.status.value,
                    )
                validate_transition(request.status, BookingStatus.CANCELLED)
                if request.booking_type is BookingType.ACCOMMODATION:
                    self._adjust_counter(conn, request, "approved_count", -1)
                self._store.update_status(
                    conn,
                    request_id,
                    BookingStatus.OVERDUE,
                    BookingStatus.CANCELLED,
                    released_at=self._clock(),
                    released_by=admin_id,
                )
                self._repository.record_transition(
                    conn, request_id, BookingStatus.OVERDUE, BookingStatus.CANCELLED, admin_id
                )
                updated = self._require_request(request_id, conn=conn)

        booking_logger(logger, request_id, updated.accommodation_id).info(
            "Overdue booking released by %s", admin_id
        )
        self._publish(
            TransitionEvent(request=updated, previous_status=BookingStatus.OVERDUE, actor_id=admin_id)
        )
        return updated

    # Ledger repair ------------------------------------------------------

    def reconcile_ledger(self, accommodation_id: int) -> tuple[Optional[LedgerCounts], LedgerCounts]:
        """Rewrite one ledger row from its booking rows; returns (stored, recount)."""
        with self._lock_for(BookingType.ACCOMMODATION, accommodation_id):
            with self._repository.transaction() as conn:
                stored = self._ledger.get(accommodation_id, conn=conn)
                recount = self._ledger.recount(conn, accommodation_id)
                if not recount.same_counts(stored):
                    self._ledger.overwrite(conn, recount)
        return stored, recount

    # Reads --------------------------------------------------------------

    def get_request(self, request_id: int) -> BookingRequest:
        return self._require_request(request_id)

    def _page_window(self, page: int, limit: Optional[int]) -> tuple[int, int]:
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        effective_limit = limit or self._config.default_page_limit
        if not 1 <= effective_limit <= self._config.max_page_limit:
            raise ValidationError(
                f"limit must be between 1 and {self._config.max_page_limit}",
                field="limit",
            )
        return effective_limit, (page - 1) * effective_limit

    def my_bookings(
        self,
        requester_id: str,
        *,
        status: Optional[BookingStatus] = None,
        booking_type: Optional[BookingType] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> BookingPage:
        requester_id = validate_requester_id(requester_id)
        effective_limit, offset = self._page_window(page, limit)
        items, total = self._store.list_for_requester(
            requester_id,
            status=status,
            booking_type=booking_type,
            limit=effective_limit,
            offset=offset,
        )
        return BookingPage(items=items, total=total, page=page, limit=effective_limit)

    def all_bookings(
        self,
        *,
        status: Optional[BookingStatus] = None,
        booking_type: Optional[BookingType] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> BookingPage:
        """Admin listing, newest first; `status_counts` covers every booking."""
        effective_limit, offset = self._page_window(page, limit)
        items, total = self._store.list_page(
            status=status,
            booking_type=booking_type,
            limit=effective_limit,
            offset=offset,
        )
        return BookingPage(
            items=items,
            total=total,
            page=page,
            limit=effective_limit,
            status_counts=self._store.count_by_status(),
        )

    def pending_for_admin(self, accommodation_id: Optional[int] = None) -> list[BookingRequest]:
        if accommodation_id is not None and self._repository.get_accommodation(accommodation_id) is None:
            raise NotFoundError(f"Accommodation {accommodation_id} not found")
        return self._store.list_pending(accommodation_id)

    def overdue_for_admin(self, now: Optional[datetime] = None) -> OverdueReport:
        """Unpaid bookings past their deadline, the candidates for `release_overdue`."""
        effective_now = ensure_utc(now or self._clock())
        items: list[OverdueBooking] = []
        for request in self._store.list_overdue(effective_now):
            days_past_due = math.ceil(
                (effective_now - request.payment_due_at) / timedelta(days=1)
            )
            items.append(
                OverdueBooking(
                    request=request,
                    days_past_due=days_past_due,
                    escalation_level=classify_escalation(days_past_due),
                )
            )
        return OverdueReport(items=items)
