"""Racing approvals must never oversell an accommodation."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta

from admission.domain.errors import CapacityExceededError
from admission.domain.models import BookingStatus, Decision
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.utils.config import get_settings
from admission.utils.timeutils import utc_now


CAPACITY = 4


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        admin_token=None,
        seed_sample_data=False,
        overdue_sweep_enabled=False,
        sqlite_busy_timeout_seconds=30.0,
    )


def _race_approvals(services: list[AdmissionService], request_ids: list[int]) -> tuple[list[int], list[int]]:
    barrier = threading.Barrier(len(request_ids))
    approved: list[int] = []
    refused: list[int] = []
    unexpected: list[BaseException] = []
    guard = threading.Lock()

    def approve(index: int, request_id: int) -> None:
        service = services[index % len(services)]
        barrier.wait()
        try:
            service.decide(request_id, Decision.APPROVE, admin_id=f"admin-{index}")
        except CapacityExceededError:
            with guard:
                refused.append(request_id)
        except BaseException as exc:  # surfaced by the assertion below
            with guard:
                unexpected.append(exc)
        else:
            with guard:
                approved.append(request_id)

    threads = [
        threading.Thread(target=approve, args=(index, request_id))
        for index, request_id in enumerate(request_ids)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert unexpected == []
    return approved, refused


def _prepare(tmp_path, filename: str, services_count: int) -> tuple[list[AdmissionService], DataRepository, list[int]]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.upsert_accommodation(
        accommodation_id=1,
        title="Surulere Shared Rooms",
        max_bookings=CAPACITY,
        guest_capacity=3,
    )
    # Separate instances share only the database, like separate worker processes.
    services = [
        AdmissionService(repository=DataRepository(settings), settings=settings)
        for _ in range(services_count)
    ]
    check_in = utc_now().date() + timedelta(days=3)
    request_ids = [
        services[0]
        .submit_request(
            accommodation_id=1,
            requester_id=f"user-{index}",
            check_in=check_in,
            check_out=check_in + timedelta(days=30),
            guests=1,
        )
        .request_id
        for index in range(CAPACITY * 2 + 1)
    ]
    return services, repository, request_ids


def test_racing_approvals_in_one_service_fill_exactly_capacity(tmp_path) -> None:
    services, repository, request_ids = _prepare(tmp_path, "race_single.db", services_count=1)

    approved, refused = _race_approvals(services, request_ids)

    assert len(approved) == CAPACITY
    assert len(refused) == len(request_ids) - CAPACITY
    counts = services[0].ledger.get(1)
    assert counts.approved_count == CAPACITY
    assert counts.pending_count == len(request_ids) - CAPACITY


def test_racing_approvals_across_services_fill_exactly_capacity(tmp_path) -> None:
    services, repository, request_ids = _prepare(tmp_path, "race_multi.db", services_count=3)

    approved, refused = _race_approvals(services, request_ids)

    assert len(approved) == CAPACITY
    statuses = [services[0].get_request(request_id).status for request_id in request_ids]
    assert statuses.count(BookingStatus.APPROVED) == CAPACITY
    assert statuses.count(BookingStatus.PENDING) == len(refused)
    with repository.transaction() as conn:
        recount = services[0].ledger.recount(conn, 1)
    assert recount.same_counts(services[0].ledger.get(1))


def test_racing_duplicate_approvals_count_once(tmp_path) -> None:
    services, repository, request_ids = _prepare(tmp_path, "race_same.db", services_count=2)
    target = request_ids[0]
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    guard = threading.Lock()

    def approve(index: int) -> None:
        barrier.wait()
        try:
            services[index % 2].decide(target, Decision.APPROVE, admin_id="admin")
        except Exception as exc:
            with guard:
                outcomes.append(type(exc).__name__)
        else:
            with guard:
                outcomes.append("ok")

    threads = [threading.Thread(target=approve, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} <= {"AlreadyDecidedError", "InvalidStateError"}
    assert services[0].ledger.get(1).approved_count == 1
