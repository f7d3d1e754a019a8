"""Tests for status transition rules, business hours and scoring config validation."""

from __future__ import annotations

import pytest

from backend.domain.constraints import (
    TRANSITION_TABLE,
    AssignmentConfig,
    assignment_config_from_settings,
    validate_assignment_config,
    validate_business_hours,
    validate_transition,
)
from backend.domain.errors import AvailabilityValidationError
from backend.domain.models import AvailabilityStatus, BusinessHours, ChangeReason, DaySchedule
from backend.utils.config import Settings


ONLINE = AvailabilityStatus.ONLINE
BUSY = AvailabilityStatus.BUSY
AWAY = AvailabilityStatus.AWAY
OFFLINE = AvailabilityStatus.OFFLINE


def valid_config(**overrides) -> AssignmentConfig:
    """Return the default AssignmentConfig, optionally overriding fields."""
    base = assignment_config_from_settings(Settings())
    defaults = {
        "workload_thresholds": dict(base.workload_thresholds),
        "priority_scores": dict(base.priority_scores),
        "workload_penalty_per_item": base.workload_penalty_per_item,
        "workload_penalty_cap": base.workload_penalty_cap,
        "expertise_bonus": base.expertise_bonus,
        "core_role_bonus": base.core_role_bonus,
    }
    defaults.update(overrides)
    return AssignmentConfig(**defaults)


# --- Transition table ---

def test_every_distinct_pair_allows_manual_change() -> None:
    for from_status in AvailabilityStatus:
        for to_status in AvailabilityStatus:
            if from_status is to_status:
                assert (from_status, to_status) not in TRANSITION_TABLE
                continue
            validate_transition(from_status, to_status, ChangeReason.MANUAL)
            validate_transition(from_status, to_status, ChangeReason.BUSINESS_HOURS)


@pytest.mark.parametrize(
    ("from_status", "to_status", "reason"),
    [
        (OFFLINE, ONLINE, ChangeReason.AUTO_ACTIVITY),
        (AWAY, ONLINE, ChangeReason.AUTO_ACTIVITY),
        (AWAY, ONLINE, ChangeReason.SCHEDULED),
        (ONLINE, AWAY, ChangeReason.AUTO_INACTIVITY),
    ],
)
def test_automatic_reasons_allowed_on_their_transitions(from_status, to_status, reason) -> None:
    validate_transition(from_status, to_status, reason)


@pytest.mark.parametrize(
    ("from_status", "to_status", "reason"),
    [
        (BUSY, AWAY, ChangeReason.AUTO_INACTIVITY),
        (OFFLINE, AWAY, ChangeReason.AUTO_INACTIVITY),
        (BUSY, ONLINE, ChangeReason.AUTO_ACTIVITY),
        (OFFLINE, ONLINE, ChangeReason.SCHEDULED),
        (ONLINE, OFFLINE, ChangeReason.AUTO_INACTIVITY),
    ],
)
def test_automatic_reasons_rejected_elsewhere(from_status, to_status, reason) -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_transition(from_status, to_status, reason)


def test_same_status_is_not_a_transition() -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_transition(ONLINE, ONLINE, ChangeReason.MANUAL)


# --- Business hours ---

def _hours(timezone: str = "Europe/Berlin", **schedule) -> BusinessHours:
    return BusinessHours(timezone=timezone, schedule=schedule)


def test_valid_business_hours_pass() -> None:
    validate_business_hours(
        _hours(
            monday=DaySchedule(start="09:00", end="17:30"),
            saturday=None,
        )
    )


def test_unknown_timezone_raises() -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_business_hours(_hours(timezone="Mars/Olympus_Mons"))


def test_unknown_weekday_raises() -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_business_hours(_hours(funday=DaySchedule(start="09:00", end="17:00")))


def test_malformed_time_raises() -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_business_hours(_hours(monday=DaySchedule(start="9am", end="17:00")))


def test_start_after_end_raises() -> None:
    with pytest.raises(AvailabilityValidationError):
        validate_business_hours(_hours(monday=DaySchedule(start="18:00", end="09:00")))


# --- Assignment config ---

def test_default_config_matches_documented_constants() -> None:
    config = valid_config()
    validate_assignment_config(config)
    assert config.workload_thresholds == {ONLINE: 8, BUSY: 3, AWAY: 0, OFFLINE: 0}
    assert config.priority_scores == {ONLINE: 100, BUSY: 50, AWAY: 0, OFFLINE: 0}
    assert config.workload_penalty_per_item == 5
    assert config.workload_penalty_cap == 50
    assert config.expertise_bonus == 25
    assert config.core_role_bonus == 10


def test_missing_threshold_raises() -> None:
    with pytest.raises(ValueError):
        validate_assignment_config(valid_config(workload_thresholds={ONLINE: 8, BUSY: 3}))


def test_negative_priority_raises() -> None:
    with pytest.raises(ValueError):
        validate_assignment_config(
            valid_config(priority_scores={ONLINE: -1, BUSY: 50, AWAY: 0, OFFLINE: 0})
        )


@pytest.mark.parametrize(
    "field_name",
    ["workload_penalty_per_item", "workload_penalty_cap", "expertise_bonus", "core_role_bonus"],
)
def test_negative_scalar_raises(field_name: str) -> None:
    with pytest.raises(ValueError):
        validate_assignment_config(valid_config(**{field_name: -1}))
