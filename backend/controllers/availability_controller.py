"""Controller layer for team availability endpoints scoped to one mailbox."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from backend.controllers.dependencies import (
    get_analytics_service,
    get_availability_service,
    get_mailbox_member,
    get_workload_sampler,
)
from backend.domain.errors import AvailabilityValidationError, NotFoundError, PersistenceError
from backend.domain.models import (
    WEEKDAYS,
    AvailabilityAnalytics,
    AvailabilityRecord,
    BusinessHours,
    DaySchedule,
    TeamMember,
)
from backend.services.analytics_service import AnalyticsAggregator
from backend.services.availability_service import AvailabilityService
from backend.services.workload_service import WorkloadSampler
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/mailboxes/{mailbox_id}/availability", tags=["availability"])

StatusValue = Literal["online", "busy", "away", "offline"]


class AvailabilityResponse(BaseModel):
    user_id: str
    mailbox_id: int
    status: StatusValue
    custom_message: Optional[str] = None
    last_activity_at: datetime
    last_status_change_at: datetime
    auto_away_at: Optional[datetime] = None
    scheduled_return_at: Optional[datetime] = None
    business_hours: Optional[dict[str, Any]] = None

    @classmethod
    def from_record(cls, record: AvailabilityRecord) -> "AvailabilityResponse":
        return cls(**record.to_dict())


class WorkloadRow(AvailabilityResponse):
    current_workload: int = Field(ge=0)
    is_available_for_assignment: bool


class UpdateStatusRequest(BaseModel):
    status: StatusValue
    custom_message: Optional[str] = Field(default=None, max_length=280)
    reason: Literal["manual", "business_hours"] = "manual"


class DayHours(BaseModel):
    start: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class BusinessHoursRequest(BaseModel):
    timezone: str = Field(min_length=1)
    schedule: dict[str, Optional[DayHours]]

    @field_validator("schedule")
    @classmethod
    def validate_weekdays(
        cls,
        value: dict[str, Optional[DayHours]],
    ) -> dict[str, Optional[DayHours]]:
        unknown = sorted(set(value) - set(WEEKDAYS))
        if unknown:
            raise ValueError(f"unknown weekdays: {', '.join(unknown)}")
        return value

    def to_business_hours(self) -> BusinessHours:
        return BusinessHours(
            timezone=self.timezone,
            schedule={
                day: DaySchedule(start=hours.start, end=hours.end) if hours else None
                for day, hours in self.schedule.items()
            },
        )


class ScheduledReturnRequest(BaseModel):
    return_at: datetime
    message: Optional[str] = Field(default=None, max_length=280)


class ActivityResponse(BaseModel):
    success: bool


class ProductivityResponse(BaseModel):
    total_conversations_handled: int = Field(ge=0)
    total_messages_replied: int = Field(ge=0)
    average_response_time: float = Field(ge=0.0)


class AnalyticsResponse(BaseModel):
    total_sessions: int = Field(ge=0)
    average_session_duration: float = Field(ge=0.0)
    status_duration_seconds: dict[str, int]
    status_transition_counts: dict[str, int]
    productivity_metrics: ProductivityResponse
    timeline: list[dict[str, Any]]

    @classmethod
    def from_analytics(cls, analytics: AvailabilityAnalytics) -> "AnalyticsResponse":
        metrics = analytics.productivity_metrics
        return cls(
            total_sessions=analytics.total_sessions,
            average_session_duration=analytics.average_session_duration,
            status_duration_seconds=analytics.status_duration_seconds,
            status_transition_counts=analytics.status_transition_counts,
            productivity_metrics=ProductivityResponse(
                total_conversations_handled=metrics.total_conversations_handled,
                total_messages_replied=metrics.total_messages_replied,
                average_response_time=metrics.average_response_time,
            ),
            timeline=analytics.timeline,
        )


@router.get("/me", response_model=AvailabilityResponse, status_code=status.HTTP_200_OK)
async def get_my_status(
    mailbox_id: int,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    try:
        record = availability_service.get_status(member.user_id, mailbox_id)
        return AvailabilityResponse.from_record(record)
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load availability status",
        ) from exc


@router.get("/team", response_model=list[AvailabilityResponse], status_code=status.HTTP_200_OK)
async def get_team_status(
    mailbox_id: int,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> list[AvailabilityResponse]:
    try:
        records = availability_service.get_team_status(mailbox_id)
        return [AvailabilityResponse.from_record(record) for record in records]
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load team availability",
        ) from exc


@router.put("/me/status", response_model=AvailabilityResponse, status_code=status.HTTP_200_OK)
async def update_status(
    mailbox_id: int,
    payload: UpdateStatusRequest,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    fields: dict[str, Any] = {}
    if "custom_message" in payload.model_fields_set:
        fields["custom_message"] = payload.custom_message or None
    try:
        record = availability_service.set_status(
            member.user_id,
            mailbox_id,
            payload.status,
            payload.reason,
            **fields,
        )
        return AvailabilityResponse.from_record(record)
    except AvailabilityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected availability status update failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update availability status",
        ) from exc


@router.post("/me/activity", response_model=ActivityResponse, status_code=status.HTTP_200_OK)
async def record_activity(
    mailbox_id: int,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> ActivityResponse:
    try:
        availability_service.record_activity(member.user_id, mailbox_id)
        return ActivityResponse(success=True)
    except Exception as exc:
        logger.exception("Unexpected activity recording failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record activity",
        ) from exc


@router.get("/workload", response_model=list[WorkloadRow], status_code=status.HTTP_200_OK)
async def get_workload_distribution(
    mailbox_id: int,
    member: TeamMember = Depends(get_mailbox_member),
    workload_sampler: WorkloadSampler = Depends(get_workload_sampler),
) -> list[WorkloadRow]:
    try:
        return [WorkloadRow(**entry.to_dict()) for entry in workload_sampler.distribution(mailbox_id)]
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load workload distribution",
        ) from exc


@router.get("/analytics", response_model=AnalyticsResponse, status_code=status.HTTP_200_OK)
async def get_analytics(
    mailbox_id: int,
    start: datetime = Query(...),
    end: datetime = Query(...),
    member: TeamMember = Depends(get_mailbox_member),
    analytics_service: AnalyticsAggregator = Depends(get_analytics_service),
) -> AnalyticsResponse:
    try:
        analytics = analytics_service.analyze(mailbox_id, start, end)
        return AnalyticsResponse.from_analytics(analytics)
    except AvailabilityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to compute availability analytics",
        ) from exc


@router.put("/me/business_hours", response_model=AvailabilityResponse, status_code=status.HTTP_200_OK)
async def set_business_hours(
    mailbox_id: int,
    payload: BusinessHoursRequest,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    try:
        record = availability_service.set_business_hours(
            member.user_id,
            mailbox_id,
            payload.to_business_hours(),
        )
        return AvailabilityResponse.from_record(record)
    except AvailabilityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected business hours update failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update business hours",
        ) from exc


@router.put("/me/scheduled_return", response_model=AvailabilityResponse, status_code=status.HTTP_200_OK)
async def set_scheduled_return(
    mailbox_id: int,
    payload: ScheduledReturnRequest,
    member: TeamMember = Depends(get_mailbox_member),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    try:
        record = availability_service.set_scheduled_return(
            member.user_id,
            mailbox_id,
            payload.return_at,
            payload.message,
        )
        return AvailabilityResponse.from_record(record)
    except AvailabilityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected scheduled return failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to set scheduled return",
        ) from exc
