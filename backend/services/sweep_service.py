"""Periodic job applying scheduled-return and auto-away transitions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from backend.domain.errors import AvailabilityError
from backend.domain.models import AvailabilityRecord, AvailabilityStatus, ChangeReason, SweepReport
from backend.repository.data_repository import DataRepository
from backend.services.availability_service import AvailabilityService
from backend.utils.clock import ensure_utc
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class ScheduledTransitionSweeper:
    """Runs two independent passes; each record transitions in isolation.

    Re-running with the same ``now`` is a no-op for records already moved:
    they no longer match the selection predicate.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        availability_service: Optional[AvailabilityService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._availability_service = availability_service or AvailabilityService(
            repository=self._repository,
            settings=self._settings,
        )

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = ensure_utc(now) if now is not None else self._availability_service.now()
        failed: list[tuple[str, int]] = []

        scheduled_returns = self._run_pass(
            self._repository.list_due_scheduled_returns(now),
            expected_status=AvailabilityStatus.AWAY,
            new_status=AvailabilityStatus.ONLINE,
            reason=ChangeReason.SCHEDULED,
            cleared_field="scheduled_return_at",
            failed=failed,
        )
        auto_away = self._run_pass(
            self._repository.list_due_auto_away(now),
            expected_status=AvailabilityStatus.ONLINE,
            new_status=AvailabilityStatus.AWAY,
            reason=ChangeReason.AUTO_INACTIVITY,
            cleared_field="auto_away_at",
            failed=failed,
        )

        report = SweepReport(
            now=now,
            scheduled_returns=scheduled_returns,
            auto_away=auto_away,
            failed=failed,
        )
        log = logger.warning if report.partial_failure else logger.info
        log(
            "Sweep completed | now=%s | scheduled_returns=%s | auto_away=%s | failed=%s",
            now.isoformat(),
            len(scheduled_returns),
            len(auto_away),
            len(failed),
        )
        return report

    def _run_pass(
        self,
        records: list[AvailabilityRecord],
        *,
        expected_status: AvailabilityStatus,
        new_status: AvailabilityStatus,
        reason: ChangeReason,
        cleared_field: str,
        failed: list[tuple[str, int]],
    ) -> list[tuple[str, int]]:
        transitioned: list[tuple[str, int]] = []
        for record in records:
            key = (record.user_id, record.mailbox_id)
            try:
                result = self._availability_service.transition_if_status(
                    record.user_id,
                    record.mailbox_id,
                    expected_status,
                    new_status,
                    reason,
                    **{cleared_field: None},
                )
            except AvailabilityError:
                logger.exception(
                    "Sweep transition failed | user_id=%s | mailbox_id=%s | reason=%s",
                    record.user_id,
                    record.mailbox_id,
                    reason.value,
                )
                failed.append(key)
                continue
            if result is not None:
                transitioned.append(key)
        return transitioned
