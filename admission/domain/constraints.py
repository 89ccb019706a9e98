"""Domain-level validation rules for submissions and runtime settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from admission.domain.errors import ValidationError
from admission.domain.models import EscalationLevel

if TYPE_CHECKING:
    from admission.utils.config import Settings


@dataclass(frozen=True)
class OccupancyThresholds:
    high: float
    critical: float
    full: float


@dataclass(frozen=True)
class AdmissionConfig:
    payment_deadline_days: int
    overdue_sweep_interval_seconds: int
    ledger_check_interval_seconds: float
    sqlite_busy_timeout_seconds: float
    default_page_limit: int
    max_page_limit: int
    thresholds: OccupancyThresholds


def build_admission_config(settings: Settings) -> AdmissionConfig:
    return AdmissionConfig(
        payment_deadline_days=settings.payment_deadline_days,
        overdue_sweep_interval_seconds=settings.overdue_sweep_interval_seconds,
        ledger_check_interval_seconds=settings.ledger_check_interval_seconds,
        sqlite_busy_timeout_seconds=settings.sqlite_busy_timeout_seconds,
        default_page_limit=settings.default_page_limit,
        max_page_limit=settings.max_page_limit,
        thresholds=OccupancyThresholds(
            high=settings.occupancy_high_threshold,
            critical=settings.occupancy_critical_threshold,
            full=settings.occupancy_full_threshold,
        ),
    )


def validate_admission_config(config: AdmissionConfig) -> None:
    if config.payment_deadline_days <= 0:
        raise ValueError("payment_deadline_days must be > 0")
    if config.overdue_sweep_interval_seconds <= 0:
        raise ValueError("overdue_sweep_interval_seconds must be > 0")
    if config.ledger_check_interval_seconds <= 0:
        raise ValueError("ledger_check_interval_seconds must be > 0")
    if config.sqlite_busy_timeout_seconds <= 0:
        raise ValueError("sqlite_busy_timeout_seconds must be > 0")
    if config.default_page_limit <= 0:
        raise ValueError("default_page_limit must be > 0")
    if config.max_page_limit < config.default_page_limit:
        raise ValueError("max_page_limit must be >= default_page_limit")
    thresholds = config.thresholds
    if not 0.0 < thresholds.high < thresholds.critical < thresholds.full:
        raise ValueError("occupancy thresholds must satisfy 0 < high < critical < full")


def validate_stay(
    check_in: date,
    check_out: date,
    number_of_guests: int,
    guest_capacity: int,
    today: date,
) -> None:
    """Reject bad dates or guest counts before anything is persisted."""
    if check_in < today:
        raise ValidationError("check_in cannot be in the past", field="check_in")
    if check_out <= check_in:
        raise ValidationError("check_out must be after check_in", field="check_out")
    if number_of_guests < 1:
        raise ValidationError("number_of_guests must be at least 1", field="number_of_guests")
    if number_of_guests > guest_capacity:
        raise ValidationError(
            f"number_of_guests cannot exceed the accommodation's capacity of {guest_capacity}",
            field="number_of_guests",
        )


def validate_requester_id(requester_id: str) -> str:
    cleaned = requester_id.strip()
    if not cleaned:
        raise ValidationError("requester_id must be non-empty", field="requester_id")
    return cleaned


# Lower bounds in days past due, most severe first.
ESCALATION_STEPS = (
    (30, EscalationLevel.CRITICAL),
    (21, EscalationLevel.FINAL),
    (14, EscalationLevel.FIRM),
    (7, EscalationLevel.GENTLE),
)


def classify_escalation(days_past_due: int) -> EscalationLevel:
    for lower_bound, level in ESCALATION_STEPS:
        if days_past_due >= lower_bound:
            return level
    return EscalationLevel.NORMAL
