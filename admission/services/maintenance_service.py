"""Background upkeep: the overdue-payment sweep and ledger consistency check."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from admission.domain.errors import AdmissionError
from admission.domain.models import LedgerCounts
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.services.stats_service import StatsService
from admission.utils.config import Settings, get_settings
from admission.utils.logger import get_logger
from admission.utils.timeutils import utc_now


logger = get_logger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    marked_overdue: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerDrift:
    accommodation_id: int
    stored: Optional[LedgerCounts]
    recount: LedgerCounts


@dataclass
class ReconcileReport:
    checked: int = 0
    healed: list[LedgerDrift] = field(default_factory=list)


class PeriodicWorker:
    """Runs `run_once` on a daemon thread every `interval` seconds until stopped."""

    thread_name = "periodic-worker"

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        raise NotImplementedError

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.run_once()
            except Exception:  # pragma: no cover - keep the worker alive
                logger.exception("%s iteration failed", self.thread_name)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=self.thread_name,
            daemon=True,
        )
        self._thread.start()
        logger.info("%s started (interval=%ss)", self.thread_name, self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("%s stopped", self.thread_name)


class OverdueSweeper(PeriodicWorker):
    """Marks approved-but-unpaid bookings overdue once their deadline passes.

    The sweep never releases a slot; that stays an explicit admin action.
    """

    thread_name = "overdue-sweeper"

    def __init__(
        self,
        admission_service: AdmissionService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        super().__init__(self._settings.overdue_sweep_interval_seconds)
        self._admission = admission_service
        self._clock = clock

    def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        effective_now = now or self._clock()
        candidates = self._admission.booking_store.list_overdue_candidates(effective_now)
        result = SweepResult(scanned=len(candidates))
        for request_id in candidates:
            try:
                self._admission.mark_overdue(request_id, now=effective_now, actor_id="overdue_sweep")
            except AdmissionError as exc:
                # Usually a payment confirmation that landed between scan and update.
                logger.info("Overdue sweep skipped request %s: %s", request_id, exc)
                result.failed[request_id] = exc.code
                continue
            result.marked_overdue.append(request_id)
        if result.marked_overdue:
            logger.info(
                "Overdue sweep marked %s of %s candidates",
                len(result.marked_overdue),
                result.scanned,
            )
        return result


class LedgerConsistencyService(PeriodicWorker):
    """Compares every ledger row with a recount of its booking rows.

    Mismatches are logged and healed by trusting the booking rows, never the
    stored counters. Runs at startup, on demand, and on its own interval.
    """

    thread_name = "ledger-consistency"

    def __init__(
        self,
        repository: DataRepository,
        admission_service: AdmissionService,
        stats_service: Optional[StatsService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        super().__init__(self._settings.ledger_check_interval_seconds)
        self._repository = repository
        self._admission = admission_service
        self._stats = stats_service

    def run_once(self) -> ReconcileReport:
        return self.reconcile()

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        for accommodation in self._repository.list_accommodations():
            stored, recount = self._admission.reconcile_ledger(accommodation.accommodation_id)
            report.checked += 1
            if recount.same_counts(stored):
                continue
            logger.warning(
                "Ledger drift for accommodation %s: stored=%s recount=%s; healed",
                accommodation.accommodation_id,
                _format_counts(stored),
                _format_counts(recount),
            )
            report.healed.append(
                LedgerDrift(
                    accommodation_id=accommodation.accommodation_id,
                    stored=stored,
                    recount=recount,
                )
            )
            if self._stats is not None:
                self._stats.invalidate(accommodation.accommodation_id)
        logger.info(
            "Ledger consistency check: %s checked, %s healed",
            report.checked,
            len(report.healed),
        )
        return report


def _format_counts(counts: Optional[LedgerCounts]) -> str:
    if counts is None:
        return "missing"
    return (
        f"approved={counts.approved_count} pending={counts.pending_count} "
        f"total={counts.total_count}"
    )
