from __future__ import annotations

import sqlite3
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from admission.domain.errors import InvalidStateError
from admission.domain.models import BookingStatus, Decision, EscalationLevel
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.services.maintenance_service import LedgerConsistencyService, OverdueSweeper
from admission.services.payment_gate import PaymentGateAdapter, PaymentSignal, PaymentSignalKind
from admission.services.stats_service import StatsService
from admission.utils.config import get_settings
from admission.utils.timeutils import utc_now


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        admin_token=None,
        seed_sample_data=False,
        overdue_sweep_enabled=False,
        payment_deadline_days=7,
    )


def _build(tmp_path, filename: str = "payments.db"):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.upsert_accommodation(
        accommodation_id=1,
        title="Yaba Sisters Hostel",
        max_bookings=2,
        guest_capacity=2,
    )
    service = AdmissionService(repository=repository, settings=settings)
    stats = StatsService(repository=repository, settings=settings, ledger=service.ledger)
    service.add_listener(stats.on_transition)
    return settings, repository, service, stats


def _approved_booking(service: AdmissionService, requester_id: str = "user-1"):
    check_in = utc_now().date() + timedelta(days=2)
    created = service.submit_request(
        accommodation_id=1,
        requester_id=requester_id,
        check_in=check_in,
        check_out=check_in + timedelta(days=60),
        guests=1,
    )
    return service.decide(created.request_id, Decision.APPROVE, admin_id="admin")


def test_payment_verified_confirms_and_is_idempotent(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    booking = _approved_booking(service)

    confirmed = gate.payment_verified(booking.request_id)
    again = gate.payment_verified(booking.request_id)

    assert confirmed.status is BookingStatus.CONFIRMED
    assert confirmed.confirmed_at is not None
    assert again.confirmed_at == confirmed.confirmed_at
    assert service.ledger.get(1).approved_count == 1
    assert repository.list_transitions(booking.request_id)[-1] == ("approved", "confirmed")


def test_payment_verified_on_pending_request_is_invalid(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    check_in = utc_now().date() + timedelta(days=2)
    created = service.submit_request(
        accommodation_id=1,
        requester_id="user-1",
        check_in=check_in,
        check_out=check_in + timedelta(days=3),
        guests=1,
    )

    with pytest.raises(InvalidStateError):
        PaymentGateAdapter(service).payment_verified(created.request_id)


def test_overdue_requires_an_elapsed_deadline(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    booking = _approved_booking(service)

    with pytest.raises(InvalidStateError):
        gate.payment_overdue(booking.request_id)

    later = booking.payment_due_at + timedelta(minutes=1)
    overdue = gate.payment_overdue(booking.request_id, now=later)
    assert overdue.status is BookingStatus.OVERDUE
    assert overdue.holds_slot
    assert gate.payment_overdue(booking.request_id, now=later).status is BookingStatus.OVERDUE
    # The slot stays held until an admin releases it.
    assert service.ledger.get(1).approved_count == 1


def test_late_payment_confirms_an_overdue_booking(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    booking = _approved_booking(service)
    gate.payment_overdue(booking.request_id, now=booking.payment_due_at + timedelta(days=1))

    confirmed = gate.payment_verified(booking.request_id)

    assert confirmed.status is BookingStatus.CONFIRMED
    assert service.ledger.get(1).approved_count == 1


def test_poll_processes_batch_and_reports_rejects(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    paid = _approved_booking(service, "user-1")
    unpaid = _approved_booking(service, "user-2")

    result = gate.poll(
        lambda: [
            PaymentSignal(request_id=paid.request_id, kind=PaymentSignalKind.VERIFIED),
            PaymentSignal(request_id=unpaid.request_id, kind=PaymentSignalKind.OVERDUE),
            PaymentSignal(request_id=999, kind=PaymentSignalKind.VERIFIED),
        ]
    )

    assert result.processed == 1
    assert result.failed == {unpaid.request_id: "invalid_state", 999: "not_found"}
    assert service.get_request(paid.request_id).status is BookingStatus.CONFIRMED


def test_sweep_marks_only_elapsed_deadlines(tmp_path) -> None:
    settings, _, service, _ = _build(tmp_path)
    first = _approved_booking(service, "user-1")
    second = _approved_booking(service, "user-2")
    PaymentGateAdapter(service).payment_verified(second.request_id)
    sweeper = OverdueSweeper(service, settings=settings)

    assert sweeper.run_once().marked_overdue == []

    result = sweeper.run_once(now=utc_now() + timedelta(days=8))

    assert result.scanned == 1
    assert result.marked_overdue == [first.request_id]
    assert service.get_request(first.request_id).status is BookingStatus.OVERDUE
    assert service.get_request(second.request_id).status is BookingStatus.CONFIRMED


def test_sweeper_thread_starts_and_stops(tmp_path) -> None:
    settings, _, service, _ = _build(tmp_path)
    sweeper = OverdueSweeper(service, settings=replace(settings, overdue_sweep_interval_seconds=3600))

    sweeper.start()
    assert sweeper.running
    sweeper.stop()
    assert not sweeper.running


def test_release_overdue_frees_the_slot(tmp_path) -> None:
    _, _, service, stats = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    first = _approved_booking(service, "user-1")
    _approved_booking(service, "user-2")
    assert stats.get_stats(1).available_slots == 0

    gate.payment_overdue(first.request_id, now=first.payment_due_at + timedelta(hours=1))
    released = service.release_overdue(first.request_id, admin_id="admin-b")

    assert released.status is BookingStatus.CANCELLED
    assert not released.holds_slot
    assert released.released_by == "admin-b"
    assert service.ledger.get(1).approved_count == 1
    assert stats.get_stats(1).available_slots == 1


def test_release_requires_overdue_status(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    booking = _approved_booking(service)

    with pytest.raises(InvalidStateError):
        service.release_overdue(booking.request_id, admin_id="admin")
    assert service.ledger.get(1).approved_count == 1


def _tamper_ledger(repository: DataRepository, approved: int, pending: int) -> None:
    with sqlite3.connect(repository.database_path) as conn:
        conn.execute(
            "UPDATE CapacityLedger SET approved_count = ?, pending_count = ? WHERE accommodation_id = 1;",
            (approved, pending),
        )


def test_consistency_check_heals_drifted_counters(tmp_path) -> None:
    _, repository, service, stats = _build(tmp_path)
    _approved_booking(service, "user-1")
    consistency = LedgerConsistencyService(repository, service, stats)
    assert consistency.reconcile().healed == []

    _tamper_ledger(repository, approved=2, pending=5)
    report = consistency.reconcile()

    assert report.checked == 1
    assert len(report.healed) == 1
    drift = report.healed[0]
    assert (drift.stored.approved_count, drift.stored.pending_count) == (2, 5)
    assert (drift.recount.approved_count, drift.recount.pending_count) == (1, 0)
    assert service.ledger.get(1).approved_count == 1
    assert stats.get_stats(1).approved_count == 1


def test_approval_heals_pending_drift_instead_of_refusing(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    check_in = utc_now().date() + timedelta(days=2)
    created = service.submit_request(
        accommodation_id=1,
        requester_id="user-1",
        check_in=check_in,
        check_out=check_in + timedelta(days=3),
        guests=1,
    )
    _tamper_ledger(repository, approved=0, pending=0)

    approved = service.decide(created.request_id, Decision.APPROVE, admin_id="admin")

    assert approved.status is BookingStatus.APPROVED
    counts = service.ledger.get(1)
    assert (counts.approved_count, counts.pending_count) == (1, 0)


def test_recompute_and_status_counts_replay_booking_rows(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    booking = _approved_booking(service, "user-1")
    PaymentGateAdapter(service).payment_verified(booking.request_id)
    _tamper_ledger(repository, approved=0, pending=3)

    counts = service.ledger.recompute(1)

    assert (counts.approved_count, counts.pending_count, counts.total_count) == (1, 0, 1)
    by_status = service.booking_store.count_by_status(1)
    assert by_status[BookingStatus.CONFIRMED] == 1
    assert by_status[BookingStatus.PENDING] == 0


def test_poll_accepts_timestamps_without_timezone(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    gate = PaymentGateAdapter(service)
    late = _approved_booking(service, "user-1")
    paid = _approved_booking(service, "user-2")
    naive_after_deadline = late.payment_due_at.replace(tzinfo=None) + timedelta(days=1)

    result = gate.poll(
        lambda: [
            PaymentSignal(
                request_id=late.request_id,
                kind=PaymentSignalKind.OVERDUE,
                occurred_at=naive_after_deadline,
            ),
            PaymentSignal(request_id=paid.request_id, kind=PaymentSignalKind.VERIFIED),
        ]
    )

    assert result.processed == 2
    assert result.failed == {}
    overdue = service.get_request(late.request_id)
    assert overdue.status is BookingStatus.OVERDUE
    assert overdue.overdue_at.tzinfo is not None
    assert service.get_request(paid.request_id).status is BookingStatus.CONFIRMED


def _pending_booking(service: AdmissionService, requester_id: str = "user-1"):
    check_in = utc_now().date() + timedelta(days=2)
    return service.submit_request(
        accommodation_id=1,
        requester_id=requester_id,
        check_in=check_in,
        check_out=check_in + timedelta(days=3),
        guests=1,
    )


def test_reject_heals_pending_drift_instead_of_failing(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    created = _pending_booking(service)
    _tamper_ledger(repository, approved=0, pending=0)

    rejected = service.decide(created.request_id, Decision.REJECT, admin_id="admin")

    assert rejected.status is BookingStatus.REJECTED
    counts = service.ledger.get(1)
    assert (counts.approved_count, counts.pending_count, counts.total_count) == (0, 0, 1)


def test_cancel_heals_pending_drift_instead_of_failing(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    created = _pending_booking(service)
    _pending_booking(service, "user-2")
    _tamper_ledger(repository, approved=0, pending=0)

    cancelled = service.cancel(created.request_id, requester_id="user-1")

    assert cancelled.status is BookingStatus.CANCELLED
    counts = service.ledger.get(1)
    assert (counts.approved_count, counts.pending_count) == (0, 1)


def test_release_heals_approved_drift_instead_of_failing(tmp_path) -> None:
    _, repository, service, _ = _build(tmp_path)
    booking = _approved_booking(service)
    PaymentGateAdapter(service).payment_overdue(
        booking.request_id, now=booking.payment_due_at + timedelta(hours=1)
    )
    _tamper_ledger(repository, approved=0, pending=0)

    released = service.release_overdue(booking.request_id, admin_id="admin")

    assert released.status is BookingStatus.CANCELLED
    assert service.ledger.get(1).approved_count == 0


def test_consistency_worker_heals_on_its_interval(tmp_path) -> None:
    settings, repository, service, stats = _build(tmp_path)
    _approved_booking(service, "user-1")
    consistency = LedgerConsistencyService(
        repository,
        service,
        stats,
        settings=replace(settings, ledger_check_interval_seconds=0.05),
    )
    _tamper_ledger(repository, approved=2, pending=4)

    consistency.start()
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if service.ledger.get(1).pending_count == 0:
                break
            time.sleep(0.02)
    finally:
        consistency.stop()

    counts = service.ledger.get(1)
    assert (counts.approved_count, counts.pending_count) == (1, 0)
    assert not consistency.running


def test_overdue_report_lists_unpaid_bookings_with_escalation(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    swept = _approved_booking(service, "user-1")
    unswept = _approved_booking(service, "user-2")
    service.mark_overdue(swept.request_id, now=swept.payment_due_at + timedelta(days=1))

    report = service.overdue_for_admin(now=swept.payment_due_at + timedelta(days=15, hours=1))

    assert {item.request.request_id for item in report.items} == {swept.request_id, unswept.request_id}
    assert [item.days_past_due for item in report.items] == [16, 16]
    assert all(item.escalation_level is EscalationLevel.FIRM for item in report.items)
    assert report.escalation_breakdown[EscalationLevel.FIRM] == 2
    assert report.average_days_overdue == 16


def test_overdue_report_skips_paid_and_not_yet_due(tmp_path) -> None:
    _, _, service, _ = _build(tmp_path)
    paid = _approved_booking(service, "user-1")
    _approved_booking(service, "user-2")
    PaymentGateAdapter(service).payment_verified(paid.request_id)

    assert service.overdue_for_admin().items == []
