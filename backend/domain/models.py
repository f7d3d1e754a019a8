"""Domain models for team availability and conversation assignment."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class AvailabilityStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    AWAY = "away"
    OFFLINE = "offline"


class ChangeReason(str, Enum):
    MANUAL = "manual"
    AUTO_ACTIVITY = "auto_activity"
    AUTO_INACTIVITY = "auto_inactivity"
    BUSINESS_HOURS = "business_hours"
    SCHEDULED = "scheduled"


class TeamRole(str, Enum):
    CORE = "core"
    NON_CORE = "non_core"
    AFK = "afk"


ACTIVE_ROLES = frozenset({TeamRole.CORE, TeamRole.NON_CORE})
ASSIGNABLE_STATUSES = frozenset({AvailabilityStatus.ONLINE, AvailabilityStatus.BUSY})
WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(frozen=True)
class DaySchedule:
    start: str
    end: str


@dataclass(frozen=True)
class BusinessHours:
    timezone: str
    schedule: dict[str, Optional[DaySchedule]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timezone": self.timezone,
            "schedule": {
                day: (
                    {"start": hours.start, "end": hours.end}
                    if hours is not None
                    else None
                )
                for day, hours in self.schedule.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BusinessHours":
        schedule: dict[str, Optional[DaySchedule]] = {}
        for day, hours in (payload.get("schedule") or {}).items():
            schedule[day] = (
                DaySchedule(start=str(hours["start"]), end=str(hours["end"]))
                if hours
                else None
            )
        return cls(timezone=str(payload["timezone"]), schedule=schedule)


@dataclass(frozen=True)
class SessionMetrics:
    conversations_handled: Optional[int] = None
    messages_replied: Optional[int] = None
    average_response_time: Optional[float] = None

    def to_dict(self) -> dict[str, float | int]:
        payload: dict[str, float | int] = {}
        if self.conversations_handled is not None:
            payload["conversations_handled"] = self.conversations_handled
        if self.messages_replied is not None:
            payload["messages_replied"] = self.messages_replied
        if self.average_response_time is not None:
            payload["average_response_time"] = self.average_response_time
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionMetrics":
        return cls(
            conversations_handled=payload.get("conversations_handled"),
            messages_replied=payload.get("messages_replied"),
            average_response_time=payload.get("average_response_time"),
        )


@dataclass(frozen=True)
class AvailabilityRecord:
    user_id: str
    mailbox_id: int
    status: AvailabilityStatus
    last_activity_at: datetime
    last_status_change_at: datetime
    custom_message: Optional[str] = None
    auto_away_at: Optional[datetime] = None
    scheduled_return_at: Optional[datetime] = None
    business_hours: Optional[BusinessHours] = None

    @property
    def is_available_for_assignment(self) -> bool:
        return self.status in ASSIGNABLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "mailbox_id": self.mailbox_id,
            "status": self.status.value,
            "custom_message": self.custom_message,
            "last_activity_at": self.last_activity_at.isoformat(),
            "last_status_change_at": self.last_status_change_at.isoformat(),
            "auto_away_at": self.auto_away_at.isoformat() if self.auto_away_at else None,
            "scheduled_return_at": (
                self.scheduled_return_at.isoformat() if self.scheduled_return_at else None
            ),
            "business_hours": self.business_hours.to_dict() if self.business_hours else None,
        }


@dataclass(frozen=True)
class AvailabilityHistoryEntry:
    user_id: str
    mailbox_id: int
    from_status: AvailabilityStatus
    to_status: AvailabilityStatus
    duration_seconds: Optional[int]
    change_reason: ChangeReason
    created_at: datetime
    session_data: Optional[SessionMetrics] = None


@dataclass(frozen=True)
class Mailbox:
    mailbox_id: int
    name: str


@dataclass(frozen=True)
class TeamMember:
    user_id: str
    mailbox_id: int
    display_name: str
    role: TeamRole
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    cleaned_up_text: Optional[str]


@dataclass(frozen=True)
class Conversation:
    conversation_id: int
    mailbox_id: int
    subject: Optional[str]
    status: str
    assigned_to_id: Optional[str]
    merged_into_id: Optional[int]
    messages: tuple[ConversationMessage, ...] = ()


@dataclass(frozen=True)
class WorkloadEntry:
    record: AvailabilityRecord
    current_workload: int

    @property
    def is_available_for_assignment(self) -> bool:
        return self.record.is_available_for_assignment

    def to_dict(self) -> dict[str, Any]:
        payload = self.record.to_dict()
        payload["current_workload"] = self.current_workload
        payload["is_available_for_assignment"] = self.is_available_for_assignment
        return payload


@dataclass(frozen=True)
class Candidate:
    member: TeamMember
    status: AvailabilityStatus
    current_workload: int
    custom_message: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.member.user_id

    @property
    def is_available_for_assignment(self) -> bool:
        return self.status in ASSIGNABLE_STATUSES


@dataclass(frozen=True)
class ExpertiseMatchResult:
    matches: dict[str, bool]
    reasoning: str
    confidence_score: Optional[float] = None
    urgency_level: Optional[str] = None

    @property
    def matched_user_ids(self) -> frozenset[str]:
        return frozenset(user_id for user_id, matched in self.matches.items() if matched)

    def to_dict(self) -> dict[str, Any]:
        return {
            "matches": dict(self.matches),
            "reasoning": self.reasoning,
            "confidence_score": self.confidence_score,
            "urgency_level": self.urgency_level,
        }


@dataclass(frozen=True)
class AvailabilityMetrics:
    total_available: int
    online_members: int
    busy_members: int
    average_workload: float

    def to_dict(self) -> dict[str, float | int]:
        return {
            "total_available": self.total_available,
            "online_members": self.online_members,
            "busy_members": self.busy_members,
            "average_workload": self.average_workload,
        }


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: int
    has_expertise: bool


@dataclass(frozen=True)
class AssignmentOutcome:
    status: str
    message: str
    conversation_id: int
    assignee_id: Optional[str] = None
    assignee_role: Optional[TeamRole] = None
    assignee_status: Optional[AvailabilityStatus] = None
    assignee_workload: Optional[int] = None
    details: Optional[str] = None
    expertise_result: Optional[ExpertiseMatchResult] = None
    availability_metrics: Optional[AvailabilityMetrics] = None

    @property
    def assigned(self) -> bool:
        return self.status == "assigned"


@dataclass(frozen=True)
class ProductivityMetrics:
    total_conversations_handled: int = 0
    total_messages_replied: int = 0
    average_response_time: float = 0.0


@dataclass(frozen=True)
class AvailabilityAnalytics:
    total_sessions: int
    average_session_duration: float
    status_duration_seconds: dict[str, int]
    status_transition_counts: dict[str, int]
    productivity_metrics: ProductivityMetrics
    timeline: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class SweepReport:
    now: datetime
    scheduled_returns: list[tuple[str, int]] = field(default_factory=list)
    auto_away: list[tuple[str, int]] = field(default_factory=list)
    failed: list[tuple[str, int]] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)
