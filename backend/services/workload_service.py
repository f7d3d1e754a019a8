"""Live workload sampling joined with team availability."""

from __future__ import annotations

from typing import Optional

from backend.domain.models import WorkloadEntry
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings


class WorkloadSampler:
    """Reads open-conversation counts fresh on every call; routing depends on them."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def sample(self, mailbox_id: int) -> dict[str, int]:
        return self._repository.count_open_conversations_by_assignee(mailbox_id)

    def distribution(self, mailbox_id: int) -> list[WorkloadEntry]:
        workload = self.sample(mailbox_id)
        return [
            WorkloadEntry(
                record=record,
                current_workload=workload.get(record.user_id, 0),
            )
            for record in self._repository.list_team_availability(mailbox_id)
        ]
