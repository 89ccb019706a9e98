"""Occupancy statistics projected from the capacity ledger."""

from __future__ import annotations

from threading import RLock
from typing import Any, Optional

import pandas as pd

from admission.domain.constraints import OccupancyThresholds, build_admission_config
from admission.domain.errors import NotFoundError, ValidationError
from admission.domain.models import (
    Accommodation,
    LedgerCounts,
    OccupancySnapshot,
    StatusBucket,
    TransitionEvent,
)
from admission.repository.capacity_ledger import CapacityLedger
from admission.repository.data_repository import DataRepository
from admission.utils.config import Settings, get_settings
from admission.utils.logger import get_logger


logger = get_logger(__name__)

OVERVIEW_SORT_COLUMNS = frozenset(
    {
        "occupancy_rate",
        "available_slots",
        "approved_count",
        "pending_count",
        "total_count",
        "max_bookings",
        "overbooked_by",
        "accommodation_id",
    }
)


def classify_occupancy(occupancy_rate: float, thresholds: OccupancyThresholds) -> StatusBucket:
    """Inclusive-lower bucket boundaries."""
    if occupancy_rate >= thresholds.full:
        return StatusBucket.FULL
    if occupancy_rate >= thresholds.critical:
        return StatusBucket.CRITICAL
    if occupancy_rate >= thresholds.high:
        return StatusBucket.HIGH
    return StatusBucket.AVAILABLE


def project_occupancy(
    counts: LedgerCounts,
    max_bookings: int,
    thresholds: OccupancyThresholds,
) -> OccupancySnapshot:
    """Pure projection of one ledger row; safe to recompute on every read.

    `overbooked_by` is reported even though approvals never exceed capacity,
    so rows edited outside the admission service still show up.
    """
    if max_bookings <= 0:
        raise ValueError("max_bookings must be > 0")
    occupancy_rate = counts.approved_count / max_bookings * 100.0
    return OccupancySnapshot(
        accommodation_id=counts.accommodation_id,
        max_bookings=max_bookings,
        approved_count=counts.approved_count,
        pending_count=counts.pending_count,
        total_count=counts.total_count,
        occupancy_rate=round(occupancy_rate, 2),
        available_slots=max_bookings - counts.approved_count,
        status_bucket=classify_occupancy(occupancy_rate, thresholds),
        overbooked_by=max(0, counts.approved_count - max_bookings),
    )


class StatsService:
    """Serves occupancy snapshots from a cache dropped on every committed write."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        ledger: Optional[CapacityLedger] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._ledger = ledger or CapacityLedger(self._repository)
        config = build_admission_config(self._settings)
        self._thresholds = config.thresholds
        self._default_page_limit = config.default_page_limit
        self._max_page_limit = config.max_page_limit
        self._cache: dict[int, OccupancySnapshot] = {}
        self._version = 0
        self._lock = RLock()

    def invalidate(self, accommodation_id: Optional[int] = None) -> None:
        with self._lock:
            self._version += 1
            if accommodation_id is None:
                self._cache.clear()
            else:
                self._cache.pop(accommodation_id, None)

    def on_transition(self, event: TransitionEvent) -> None:
        """Listener registered with the admission service."""
        if event.request.accommodation_id is not None:
            self.invalidate(event.request.accommodation_id)

    def _snapshot_for(self, accommodation: Accommodation, counts: Optional[LedgerCounts]) -> OccupancySnapshot:
        effective = counts or LedgerCounts(
            accommodation_id=accommodation.accommodation_id,
            approved_count=0,
            pending_count=0,
            total_count=0,
        )
        return project_occupancy(effective, accommodation.max_bookings, self._thresholds)

    def get_stats(self, accommodation_id: int) -> OccupancySnapshot:
        with self._lock:
            cached = self._cache.get(accommodation_id)
            version = self._version
        if cached is not None:
            return cached

        accommodation = self._repository.get_accommodation(accommodation_id)
        if accommodation is None:
            raise NotFoundError(f"Accommodation {accommodation_id} not found")
        snapshot = self._snapshot_for(accommodation, self._ledger.get(accommodation_id))
        with self._lock:
            # A write committed while we were reading; do not cache the old view.
            if self._version == version:
                self._cache[accommodation_id] = snapshot
        if snapshot.overbooked_by > 0:
            logger.warning(
                "Accommodation %s is overbooked by %s (%s/%s)",
                accommodation_id,
                snapshot.overbooked_by,
                snapshot.approved_count,
                snapshot.max_bookings,
            )
        return snapshot

    def overview(
        self,
        *,
        sort_by: str = "occupancy_rate",
        sort_order: str = "desc",
        page: int = 1,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """Admin overview: one row per accommodation plus fleet-wide summary."""
        if sort_by not in OVERVIEW_SORT_COLUMNS:
            raise ValidationError(
                f"sort_by must be one of {sorted(OVERVIEW_SORT_COLUMNS)}",
                field="sort_by",
            )
        if sort_order not in {"asc", "desc"}:
            raise ValidationError("sort_order must be 'asc' or 'desc'", field="sort_order")
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        effective_limit = limit or self._default_page_limit
        if not 1 <= effective_limit <= self._max_page_limit:
            raise ValidationError(
                f"limit must be between 1 and {self._max_page_limit}",
                field="limit",
            )

        accommodations = self._repository.list_accommodations()
        counts_by_id = {counts.accommodation_id: counts for counts in self._ledger.list_all()}
        rows: dict[int, dict[str, Any]] = {}
        for accommodation in accommodations:
            snapshot = self._snapshot_for(
                accommodation,
                counts_by_id.get(accommodation.accommodation_id),
            )
            rows[accommodation.accommodation_id] = {
                "accommodation_id": accommodation.accommodation_id,
                "title": accommodation.title,
                "admin_status": accommodation.admin_status.value,
                "max_bookings": snapshot.max_bookings,
                "approved_count": snapshot.approved_count,
                "pending_count": snapshot.pending_count,
                "total_count": snapshot.total_count,
                "available_slots": snapshot.available_slots,
                "occupancy_rate": snapshot.occupancy_rate,
                "status_bucket": snapshot.status_bucket.value,
                "overbooked_by": snapshot.overbooked_by,
                "can_accept_bookings": snapshot.can_accept_bookings,
            }

        frame = pd.DataFrame(list(rows.values()))
        offset = (page - 1) * effective_limit
        if frame.empty:
            return {
                "summary": _empty_summary(),
                "accommodations": [],
                "pagination": {
                    "page": page,
                    "limit": effective_limit,
                    "pages": 0,
                    "total_accommodations": 0,
                },
            }

        ordered = frame.sort_values(
            by=[sort_by, "accommodation_id"],
            ascending=[sort_order == "asc", True],
            kind="mergesort",
        )
        page_ids = ordered["accommodation_id"].iloc[offset : offset + effective_limit].tolist()
        bucket_counts = frame["status_bucket"].value_counts()

        total = len(frame)
        available = int(frame["can_accept_bookings"].sum())
        summary = {
            "total_accommodations": total,
            "available_accommodations": available,
            "fully_booked_accommodations": total - available,
            "total_booking_slots": int(frame["max_bookings"].sum()),
            "total_approved_bookings": int(frame["approved_count"].sum()),
            "total_pending_bookings": int(frame["pending_count"].sum()),
            "average_occupancy_rate": round(float(frame["occupancy_rate"].mean()), 2),
            "overbooked_accommodations": int((frame["overbooked_by"] > 0).sum()),
            "status_buckets": {
                bucket.value: int(bucket_counts.get(bucket.value, 0)) for bucket in StatusBucket
            },
        }
        return {
            "summary": summary,
            "accommodations": [rows[int(accommodation_id)] for accommodation_id in page_ids],
            "pagination": {
                "page": page,
                "limit": effective_limit,
                "pages": (total + effective_limit - 1) // effective_limit,
                "total_accommodations": total,
            },
        }


def _empty_summary() -> dict[str, Any]:
    return {
        "total_accommodations": 0,
        "available_accommodations": 0,
        "fully_booked_accommodations": 0,
        "total_booking_slots": 0,
        "total_approved_bookings": 0,
        "total_pending_bookings": 0,
        "average_occupancy_rate": 0.0,
        "overbooked_accommodations": 0,
        "status_buckets": {bucket.value: 0 for bucket in StatusBucket},
    }
