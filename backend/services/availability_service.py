"""Availability state machine: status transitions, history accounting and activity aging."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from backend.domain.constraints import validate_business_hours, validate_transition
from backend.domain.errors import AvailabilityValidationError, PersistenceError
from backend.domain.models import (
    AvailabilityHistoryEntry,
    AvailabilityRecord,
    AvailabilityStatus,
    BusinessHours,
    ChangeReason,
    SessionMetrics,
)
from backend.repository.data_repository import DataRepository
from backend.services.broadcast_service import (
    AVAILABILITY_UPDATED_EVENT,
    AvailabilityBroadcaster,
    team_channel_id,
)
from backend.utils.clock import Clock, ensure_utc, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_UNSET: Any = object()
_MAX_TRANSITION_ATTEMPTS = 3

_Target = tuple[AvailabilityStatus, dict[str, Any]]


def _coerce_status(value: AvailabilityStatus | str) -> AvailabilityStatus:
    try:
        return AvailabilityStatus(value)
    except ValueError as exc:
        raise AvailabilityValidationError(f"unknown availability status {value!r}") from exc


def _coerce_reason(value: ChangeReason | str) -> ChangeReason:
    try:
        return ChangeReason(value)
    except ValueError as exc:
        raise AvailabilityValidationError(f"unknown change reason {value!r}") from exc


def _collect_fields(
    custom_message: Any,
    auto_away_at: Any,
    scheduled_return_at: Any,
    business_hours: Any,
) -> dict[str, Any]:
    """Keep only the fields the caller supplied, normalised for storage."""
    fields: dict[str, Any] = {}
    if custom_message is not _UNSET:
        fields["custom_message"] = custom_message
    if auto_away_at is not _UNSET:
        fields["auto_away_at"] = ensure_utc(auto_away_at) if auto_away_at else None
    if scheduled_return_at is not _UNSET:
        fields["scheduled_return_at"] = (
            ensure_utc(scheduled_return_at) if scheduled_return_at else None
        )
    if business_hours is not _UNSET:
        if business_hours is not None:
            validate_business_hours(business_hours)
        fields["business_hours"] = business_hours
    return fields


def default_record(user_id: str, mailbox_id: int, now: datetime) -> AvailabilityRecord:
    """Virtual record for users who never wrote an availability row."""
    return AvailabilityRecord(
        user_id=user_id,
        mailbox_id=mailbox_id,
        status=AvailabilityStatus.OFFLINE,
        last_activity_at=now,
        last_status_change_at=now,
    )


class AvailabilityService:
    """Validates and applies status transitions, pairing each with one history entry."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        broadcaster: Optional[AvailabilityBroadcaster] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._broadcaster = broadcaster or AvailabilityBroadcaster()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def get_status(self, user_id: str, mailbox_id: int) -> AvailabilityRecord:
        current = self._repository.get_availability(user_id, mailbox_id)
        if current is not None:
            return current
        return default_record(user_id, mailbox_id, self.now())

    def get_team_status(self, mailbox_id: int) -> list[AvailabilityRecord]:
        return self._repository.list_team_availability(mailbox_id)

    def set_status(
        self,
        user_id: str,
        mailbox_id: int,
        status: AvailabilityStatus | str,
        reason: ChangeReason | str = ChangeReason.MANUAL,
        *,
        custom_message: Optional[str] = _UNSET,
        auto_away_at: Optional[datetime] = _UNSET,
        scheduled_return_at: Optional[datetime] = _UNSET,
        business_hours: Optional[BusinessHours] = _UNSET,
        session_data: Optional[SessionMetrics] = None,
    ) -> AvailabilityRecord:
        """Apply ``status`` for the user.

        Re-applying the current status only patches the supplied fields. A real
        change writes the record and exactly one history entry atomically, then
        broadcasts the new state.
        """
        new_status = _coerce_status(status)
        fields = _collect_fields(custom_message, auto_away_at, scheduled_return_at, business_hours)
        return self._apply(
            user_id,
            mailbox_id,
            _coerce_reason(reason),
            lambda base, now: (new_status, fields),
            session_data=session_data,
        )

    def record_activity(self, user_id: str, mailbox_id: int) -> AvailabilityRecord:
        """Register activity: wake away/offline users and push back an armed auto-away."""
        arm_always = self._settings.arm_auto_away_on_activity

        def resolve(base: AvailabilityRecord, now: datetime) -> _Target:
            fields: dict[str, Any] = {}
            if base.auto_away_at is not None or arm_always:
                fields["auto_away_at"] = now + timedelta(minutes=self._settings.auto_away_minutes)
            if base.status in (AvailabilityStatus.OFFLINE, AvailabilityStatus.AWAY):
                return AvailabilityStatus.ONLINE, fields
            return base.status, fields

        return self._apply(user_id, mailbox_id, ChangeReason.AUTO_ACTIVITY, resolve)

    def transition_if_status(
        self,
        user_id: str,
        mailbox_id: int,
        expected_status: AvailabilityStatus,
        new_status: AvailabilityStatus,
        reason: ChangeReason,
        *,
        custom_message: Optional[str] = _UNSET,
        auto_away_at: Optional[datetime] = _UNSET,
        scheduled_return_at: Optional[datetime] = _UNSET,
    ) -> Optional[AvailabilityRecord]:
        """Transition only while the row still holds ``expected_status``; None otherwise."""
        fields = _collect_fields(custom_message, auto_away_at, scheduled_return_at, _UNSET)

        def resolve(base: AvailabilityRecord, now: datetime) -> Optional[_Target]:
            if base.status is not expected_status:
                return None
            return new_status, fields

        return self._apply(user_id, mailbox_id, reason, resolve, require_row=True)

    def set_business_hours(
        self,
        user_id: str,
        mailbox_id: int,
        business_hours: BusinessHours,
    ) -> AvailabilityRecord:
        fields = _collect_fields(_UNSET, _UNSET, _UNSET, business_hours)
        return self._apply(
            user_id,
            mailbox_id,
            ChangeReason.MANUAL,
            lambda base, now: (base.status, fields),
        )

    def set_scheduled_return(
        self,
        user_id: str,
        mailbox_id: int,
        return_at: datetime,
        message: Optional[str] = None,
    ) -> AvailabilityRecord:
        return_at = ensure_utc(return_at)
        if return_at <= self.now():
            raise AvailabilityValidationError("return time must be in the future")
        return self.set_status(
            user_id,
            mailbox_id,
            AvailabilityStatus.AWAY,
            ChangeReason.MANUAL,
            scheduled_return_at=return_at,
            custom_message=message or None,
        )

    def _apply(
        self,
        user_id: str,
        mailbox_id: int,
        reason: ChangeReason,
        resolve: Callable[[AvailabilityRecord, datetime], Optional[_Target]],
        *,
        session_data: Optional[SessionMetrics] = None,
        require_row: bool = False,
    ) -> Optional[AvailabilityRecord]:
        """Read, decide and write under a status guard, re-reading after a lost race.

        ``resolve`` maps the freshly read record to the target status and field
        patch, or None to leave the record untouched.
        """
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            now = self.now()
            current = self._repository.get_availability(user_id, mailbox_id)
            if current is None and require_row:
                return None
            base = current or default_record(user_id, mailbox_id, now)
            target = resolve(base, now)
            if target is None:
                return None
            new_status, fields = target
            expected_status = current.status if current is not None else None

            if new_status is base.status:
                record = replace(base, last_activity_at=now, **fields)
                if self._repository.save_availability_fields(record, expected_status):
                    self._publish(record)
                    return record
            else:
                validate_transition(base.status, new_status, reason)
                record = self._next_record(base, new_status, now, fields)
                entry = AvailabilityHistoryEntry(
                    user_id=user_id,
                    mailbox_id=mailbox_id,
                    from_status=base.status,
                    to_status=new_status,
                    duration_seconds=(
                        max(0, int((now - base.last_status_change_at).total_seconds()))
                        if current is not None
                        else None
                    ),
                    change_reason=reason,
                    created_at=now,
                    session_data=session_data,
                )
                if self._repository.apply_status_transition(record, entry, expected_status):
                    logger.info(
                        (
                            "Status transition applied | user_id=%s | mailbox_id=%s | "
                            "from=%s | to=%s | reason=%s | duration_seconds=%s"
                        ),
                        user_id,
                        mailbox_id,
                        base.status.value,
                        new_status.value,
                        reason.value,
                        entry.duration_seconds,
                    )
                    self._publish(record)
                    return record
            logger.info(
                "Availability write lost a concurrent update; retrying | user_id=%s | mailbox_id=%s",
                user_id,
                mailbox_id,
            )

        raise PersistenceError(
            f"Could not apply status change for {user_id} in mailbox {mailbox_id}"
        )

    @staticmethod
    def _next_record(
        base: AvailabilityRecord,
        new_status: AvailabilityStatus,
        now: datetime,
        fields: dict[str, Any],
    ) -> AvailabilityRecord:
        # Deadlines only make sense for the status they age out of.
        auto_away_at = fields.get(
            "auto_away_at",
            base.auto_away_at if new_status is AvailabilityStatus.ONLINE else None,
        )
        scheduled_return_at = fields.get(
            "scheduled_return_at",
            base.scheduled_return_at if new_status is AvailabilityStatus.AWAY else None,
        )
        return replace(
            base,
            status=new_status,
            custom_message=fields.get("custom_message", base.custom_message),
            business_hours=fields.get("business_hours", base.business_hours),
            last_activity_at=now,
            last_status_change_at=now,
            auto_away_at=auto_away_at,
            scheduled_return_at=scheduled_return_at,
        )

    def _publish(self, record: AvailabilityRecord) -> None:
        try:
            self._broadcaster.publish(
                team_channel_id(record.mailbox_id),
                AVAILABILITY_UPDATED_EVENT,
                record.to_dict(),
            )
        except Exception:
            logger.exception(
                "Availability broadcast failed | user_id=%s | mailbox_id=%s",
                record.user_id,
                record.mailbox_id,
            )
