"""Tests for settings validation, stay validation and the transition table."""

from __future__ import annotations

from datetime import date

import pytest

from admission.domain.constraints import (
    AdmissionConfig,
    OccupancyThresholds,
    classify_escalation,
    validate_admission_config,
    validate_requester_id,
    validate_stay,
)
from admission.domain.errors import InvalidStateError, ValidationError
from admission.domain.models import BookingStatus, EscalationLevel
from admission.domain.transitions import (
    TERMINAL_STATUSES,
    allowed_targets,
    can_transition,
    validate_transition,
)


TODAY = date(2026, 3, 1)


def valid_config(**overrides) -> AdmissionConfig:
    """Return a valid baseline AdmissionConfig, optionally overriding fields."""
    defaults = {
        "payment_deadline_days": 7,
        "overdue_sweep_interval_seconds": 300,
        "ledger_check_interval_seconds": 3600,
        "sqlite_busy_timeout_seconds": 10.0,
        "default_page_limit": 20,
        "max_page_limit": 100,
        "thresholds": OccupancyThresholds(high=60.0, critical=80.0, full=100.0),
    }
    defaults.update(overrides)
    return AdmissionConfig(**defaults)


# --- AdmissionConfig ---

def test_valid_config_passes() -> None:
    validate_admission_config(valid_config())


@pytest.mark.parametrize(
    "field",
    ["payment_deadline_days", "overdue_sweep_interval_seconds", "ledger_check_interval_seconds", "default_page_limit"],
)
def test_non_positive_intervals_raise(field: str) -> None:
    with pytest.raises(ValueError):
        validate_admission_config(valid_config(**{field: 0}))


def test_busy_timeout_zero_raises() -> None:
    with pytest.raises(ValueError):
        validate_admission_config(valid_config(sqlite_busy_timeout_seconds=0.0))


def test_max_page_limit_below_default_raises() -> None:
    with pytest.raises(ValueError):
        validate_admission_config(valid_config(default_page_limit=50, max_page_limit=10))


@pytest.mark.parametrize(
    "thresholds",
    [
        OccupancyThresholds(high=80.0, critical=60.0, full=100.0),
        OccupancyThresholds(high=60.0, critical=100.0, full=100.0),
        OccupancyThresholds(high=0.0, critical=80.0, full=100.0),
    ],
)
def test_thresholds_must_increase(thresholds: OccupancyThresholds) -> None:
    with pytest.raises(ValueError):
        validate_admission_config(valid_config(thresholds=thresholds))


# --- Stay validation ---

def test_valid_stay_passes() -> None:
    validate_stay(
        check_in=date(2026, 3, 10),
        check_out=date(2026, 4, 10),
        number_of_guests=2,
        guest_capacity=2,
        today=TODAY,
    )


def test_check_out_not_after_check_in_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_stay(
            check_in=date(2026, 3, 10),
            check_out=date(2026, 3, 10),
            number_of_guests=1,
            guest_capacity=2,
            today=TODAY,
        )
    assert exc_info.value.field == "check_out"


def test_check_in_in_the_past_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_stay(
            check_in=date(2026, 2, 28),
            check_out=date(2026, 3, 10),
            number_of_guests=1,
            guest_capacity=2,
            today=TODAY,
        )
    assert exc_info.value.field == "check_in"


@pytest.mark.parametrize("guests", [0, 3])
def test_guest_count_outside_capacity_is_rejected(guests: int) -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_stay(
            check_in=date(2026, 3, 10),
            check_out=date(2026, 4, 10),
            number_of_guests=guests,
            guest_capacity=2,
            today=TODAY,
        )
    assert exc_info.value.field == "number_of_guests"


def test_requester_id_is_stripped_and_required() -> None:
    assert validate_requester_id("  user-1 ") == "user-1"
    with pytest.raises(ValidationError):
        validate_requester_id("   ")


# --- Transition table ---

def test_terminal_statuses_have_no_exits() -> None:
    assert TERMINAL_STATUSES == {
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    }
    for status in (BookingStatus.REJECTED, BookingStatus.CANCELLED):
        for target in BookingStatus:
            assert not can_transition(status, target)


def test_nothing_returns_to_pending() -> None:
    for status in BookingStatus:
        assert BookingStatus.PENDING not in allowed_targets(status)


def test_approved_cannot_be_cancelled_directly() -> None:
    with pytest.raises(InvalidStateError) as exc_info:
        validate_transition(BookingStatus.APPROVED, BookingStatus.CANCELLED)
    assert exc_info.value.current_status == "approved"


def test_overdue_can_still_confirm_or_be_released() -> None:
    assert allowed_targets(BookingStatus.OVERDUE) == {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    }


@pytest.mark.parametrize(
    ("days", "level"),
    [
        (1, EscalationLevel.NORMAL),
        (6, EscalationLevel.NORMAL),
        (7, EscalationLevel.GENTLE),
        (14, EscalationLevel.FIRM),
        (21, EscalationLevel.FINAL),
        (29, EscalationLevel.FINAL),
        (30, EscalationLevel.CRITICAL),
        (90, EscalationLevel.CRITICAL),
    ],
)
def test_escalation_steps_by_days_past_due(days: int, level: EscalationLevel) -> None:
    assert classify_escalation(days) is level
