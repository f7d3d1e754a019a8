"""Aggregations over the availability history of a mailbox."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Optional

import pandas as pd

from backend.domain.errors import AvailabilityValidationError, MailboxNotFoundError
from backend.domain.models import (
    AvailabilityAnalytics,
    AvailabilityHistoryEntry,
    AvailabilityStatus,
    ProductivityMetrics,
)
from backend.repository.data_repository import DataRepository
from backend.utils.clock import ensure_utc
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class AnalyticsAggregator:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def analyze(self, mailbox_id: int, start: datetime, end: datetime) -> AvailabilityAnalytics:
        """Summarize history entries created within ``[start, end]``.

        Averages divide by the number of entries carrying the measured value,
        so entries without a duration or session metrics do not dilute them.
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if start > end:
            raise AvailabilityValidationError("start must not be after end")
        if self._repository.get_mailbox(mailbox_id) is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")

        entries = self._repository.list_availability_history(mailbox_id, start, end)
        analytics = summarize_history(entries)
        logger.info(
            "Analytics computed | mailbox_id=%s | start=%s | end=%s | sessions=%s",
            mailbox_id,
            start.isoformat(),
            end.isoformat(),
            analytics.total_sessions,
        )
        return analytics


def summarize_history(entries: list[AvailabilityHistoryEntry]) -> AvailabilityAnalytics:
    total_duration = 0
    duration_count = 0
    status_duration: dict[str, int] = defaultdict(int)
    transition_counts: Counter[str] = Counter()
    conversations_handled = 0
    messages_replied = 0
    response_time_total = 0.0
    response_time_count = 0

    for entry in entries:
        from_status = entry.from_status.value
        transition_counts[from_status] += 1
        if entry.duration_seconds is not None:
            total_duration += entry.duration_seconds
            duration_count += 1
            status_duration[from_status] += entry.duration_seconds

        session = entry.session_data
        if session is None:
            continue
        if session.conversations_handled is not None:
            conversations_handled += session.conversations_handled
        if session.messages_replied is not None:
            messages_replied += session.messages_replied
        if session.average_response_time is not None:
            response_time_total += session.average_response_time
            response_time_count += 1

    return AvailabilityAnalytics(
        total_sessions=len(entries),
        average_session_duration=(total_duration / duration_count) if duration_count else 0.0,
        status_duration_seconds={
            status.value: int(status_duration.get(status.value, 0))
            for status in AvailabilityStatus
        },
        status_transition_counts={
            status.value: int(transition_counts.get(status.value, 0))
            for status in AvailabilityStatus
        },
        productivity_metrics=ProductivityMetrics(
            total_conversations_handled=conversations_handled,
            total_messages_replied=messages_replied,
            average_response_time=(
                response_time_total / response_time_count if response_time_count else 0.0
            ),
        ),
        timeline=build_daily_timeline(entries),
    )


def build_daily_timeline(entries: list[AvailabilityHistoryEntry]) -> list[dict[str, Any]]:
    """Seconds spent per status, bucketed by the UTC day the status was left."""
    frame = pd.DataFrame(
        [
            {
                "date": entry.created_at.date().isoformat(),
                "status": entry.from_status.value,
                "duration_seconds": entry.duration_seconds,
            }
            for entry in entries
            if entry.duration_seconds is not None
        ]
    )
    if frame.empty:
        return []

    pivot = frame.pivot_table(
        index="date",
        columns="status",
        values="duration_seconds",
        aggfunc="sum",
        fill_value=0,
    ).sort_index()

    timeline: list[dict[str, Any]] = []
    for day, row in pivot.iterrows():
        point: dict[str, Any] = {"date": str(day)}
        for status in AvailabilityStatus:
            point[status.value] = int(row[status.value]) if status.value in row.index else 0
        timeline.append(point)
    return timeline
