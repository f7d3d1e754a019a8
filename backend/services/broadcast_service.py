"""Best-effort fan-out of availability changes to in-process observers."""

from __future__ import annotations

from threading import RLock
from typing import Any, Callable

from backend.utils.logger import get_logger


logger = get_logger(__name__)

AVAILABILITY_UPDATED_EVENT = "availability.updated"

Subscriber = Callable[[str, str, dict[str, Any]], None]


def team_channel_id(mailbox_id: int) -> str:
    return f"mailbox:{mailbox_id}:team"


class AvailabilityBroadcaster:
    """Publishes events to subscribers; a failing subscriber never reaches the caller."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = RLock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(channel, event, payload)
            except Exception:
                logger.exception(
                    "Broadcast subscriber failed | channel=%s | event=%s",
                    channel,
                    event,
                )
        logger.debug(
            "Broadcast published | channel=%s | event=%s | subscribers=%s",
            channel,
            event,
            len(subscribers),
        )
