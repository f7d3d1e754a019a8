"""Domain-level validation rules for status transitions and assignment scoring."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.domain.errors import AvailabilityValidationError
from backend.domain.models import (
    WEEKDAYS,
    AvailabilityStatus,
    BusinessHours,
    ChangeReason,
)
from backend.utils.config import Settings


_ANY_CHANGE = frozenset({ChangeReason.MANUAL, ChangeReason.BUSINESS_HOURS})
_HH_MM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _build_transition_table() -> dict[
    tuple[AvailabilityStatus, AvailabilityStatus],
    frozenset[ChangeReason],
]:
    table: dict[tuple[AvailabilityStatus, AvailabilityStatus], frozenset[ChangeReason]] = {}
    for from_status in AvailabilityStatus:
        for to_status in AvailabilityStatus:
            if from_status is not to_status:
                table[(from_status, to_status)] = _ANY_CHANGE

    online = AvailabilityStatus.ONLINE
    away = AvailabilityStatus.AWAY
    offline = AvailabilityStatus.OFFLINE
    table[(offline, online)] = _ANY_CHANGE | {ChangeReason.AUTO_ACTIVITY}
    table[(away, online)] = _ANY_CHANGE | {ChangeReason.AUTO_ACTIVITY, ChangeReason.SCHEDULED}
    table[(online, away)] = _ANY_CHANGE | {ChangeReason.AUTO_INACTIVITY}
    return table


# (from, to) -> reasons allowed to drive that transition.
TRANSITION_TABLE = _build_transition_table()


def validate_transition(
    from_status: AvailabilityStatus,
    to_status: AvailabilityStatus,
    reason: ChangeReason,
) -> None:
    allowed = TRANSITION_TABLE.get((from_status, to_status))
    if allowed is None:
        raise AvailabilityValidationError(
            f"{from_status.value} -> {to_status.value} is not a status transition"
        )
    if reason not in allowed:
        raise AvailabilityValidationError(
            f"reason {reason.value} cannot drive {from_status.value} -> {to_status.value}"
        )


def validate_business_hours(business_hours: BusinessHours) -> None:
    try:
        ZoneInfo(business_hours.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise AvailabilityValidationError(
            f"unknown timezone {business_hours.timezone!r}"
        ) from exc

    for day, hours in business_hours.schedule.items():
        if day not in WEEKDAYS:
            raise AvailabilityValidationError(f"unknown weekday {day!r}")
        if hours is None:
            continue
        if _HH_MM.fullmatch(hours.start) is None or _HH_MM.fullmatch(hours.end) is None:
            raise AvailabilityValidationError(f"{day} hours must follow HH:MM format")
        if hours.start >= hours.end:
            raise AvailabilityValidationError(f"{day} start must be before end")


@dataclass(frozen=True)
class AssignmentConfig:
    workload_thresholds: Mapping[AvailabilityStatus, int]
    priority_scores: Mapping[AvailabilityStatus, int]
    workload_penalty_per_item: int
    workload_penalty_cap: int
    expertise_bonus: int
    core_role_bonus: int


def assignment_config_from_settings(settings: Settings) -> AssignmentConfig:
    return AssignmentConfig(
        workload_thresholds={
            AvailabilityStatus.ONLINE: settings.workload_threshold_online,
            AvailabilityStatus.BUSY: settings.workload_threshold_busy,
            AvailabilityStatus.AWAY: 0,
            AvailabilityStatus.OFFLINE: 0,
        },
        priority_scores={
            AvailabilityStatus.ONLINE: settings.priority_score_online,
            AvailabilityStatus.BUSY: settings.priority_score_busy,
            AvailabilityStatus.AWAY: 0,
            AvailabilityStatus.OFFLINE: 0,
        },
        workload_penalty_per_item=settings.workload_penalty_per_item,
        workload_penalty_cap=settings.workload_penalty_cap,
        expertise_bonus=settings.expertise_bonus,
        core_role_bonus=settings.core_role_bonus,
    )


def validate_assignment_config(config: AssignmentConfig) -> None:
    for status in AvailabilityStatus:
        if status not in config.workload_thresholds:
            raise ValueError(f"workload threshold missing for {status.value}")
        if status not in config.priority_scores:
            raise ValueError(f"priority score missing for {status.value}")
        if config.workload_thresholds[status] < 0:
            raise ValueError("workload thresholds must be >= 0")
        if config.priority_scores[status] < 0:
            raise ValueError("priority scores must be >= 0")
    if config.workload_penalty_per_item < 0:
        raise ValueError("workload_penalty_per_item must be >= 0")
    if config.workload_penalty_cap < 0:
        raise ValueError("workload_penalty_cap must be >= 0")
    if config.expertise_bonus < 0:
        raise ValueError("expertise_bonus must be >= 0")
    if config.core_role_bonus < 0:
        raise ValueError("core_role_bonus must be >= 0")
