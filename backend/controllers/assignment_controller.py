"""Controller layer for login, conversation auto-assignment and background jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import (
    get_assignment_service,
    get_auth_service,
    get_sweeper,
    require_job_token,
)
from backend.domain.errors import NotFoundError, PersistenceError
from backend.domain.models import AssignmentOutcome, SweepReport
from backend.services.assignment_service import AutoAssignmentService
from backend.services.auth_service import (
    AccessTokenNotConfiguredError,
    AuthService,
    InvalidTokenError,
)
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["assignment"])


class LoginRequest(BaseModel):
    user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AvailabilityMetricsResponse(BaseModel):
    total_available: int = Field(ge=0)
    online_members: int = Field(ge=0)
    busy_members: int = Field(ge=0)
    average_workload: float = Field(ge=0.0)


class AssignmentResponse(BaseModel):
    status: Literal["assigned", "skipped"]
    message: str
    conversation_id: int
    assignee_id: Optional[str] = None
    assignee_role: Optional[str] = None
    assignee_status: Optional[str] = None
    assignee_workload: Optional[int] = None
    details: Optional[str] = None
    expertise_result: Optional[dict[str, Any]] = None
    availability_metrics: Optional[AvailabilityMetricsResponse] = None

    @classmethod
    def from_outcome(cls, outcome: AssignmentOutcome) -> "AssignmentResponse":
        metrics = outcome.availability_metrics
        return cls(
            status=outcome.status,
            message=outcome.message,
            conversation_id=outcome.conversation_id,
            assignee_id=outcome.assignee_id,
            assignee_role=outcome.assignee_role.value if outcome.assignee_role else None,
            assignee_status=outcome.assignee_status.value if outcome.assignee_status else None,
            assignee_workload=outcome.assignee_workload,
            details=outcome.details,
            expertise_result=(
                outcome.expertise_result.to_dict() if outcome.expertise_result else None
            ),
            availability_metrics=(
                AvailabilityMetricsResponse(**metrics.to_dict()) if metrics else None
            ),
        )


class SweepMember(BaseModel):
    user_id: str
    mailbox_id: int


class SweepRequest(BaseModel):
    now: Optional[datetime] = None


class SweepResponse(BaseModel):
    now: datetime
    scheduled_returns: list[SweepMember]
    auto_away: list[SweepMember]
    failed: list[SweepMember]
    partial_failure: bool

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepResponse":
        def members(pairs: list[tuple[str, int]]) -> list[SweepMember]:
            return [SweepMember(user_id=user_id, mailbox_id=mailbox_id) for user_id, mailbox_id in pairs]

        return cls(
            now=report.now,
            scheduled_returns=members(report.scheduled_returns),
            auto_away=members(report.auto_away),
            failed=members(report.failed),
            partial_failure=report.partial_failure,
        )


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer = auth_service.login(payload.user_id, payload.access_token)
        return LoginResponse(access_token=bearer)
    except (AccessTokenNotConfiguredError, InvalidTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected login failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to login",
        ) from exc


@router.post(
    "/conversations/{conversation_id}/auto_assign",
    response_model=AssignmentResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_job_token)],
)
async def auto_assign_conversation(
    conversation_id: int,
    assignment_service: AutoAssignmentService = Depends(get_assignment_service),
) -> AssignmentResponse:
    try:
        outcome = assignment_service.auto_assign(conversation_id)
        return AssignmentResponse.from_outcome(outcome)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        logger.warning("Assignment persistence failure | conversation_id=%s", conversation_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Assignment temporarily unavailable, retry later",
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected auto assignment failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to auto assign conversation",
        ) from exc


@router.post(
    "/jobs/sweep",
    response_model=SweepResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_job_token)],
)
async def run_sweep(
    payload: SweepRequest | None = None,
    sweeper: ScheduledTransitionSweeper = Depends(get_sweeper),
) -> SweepResponse:
    try:
        report = sweeper.sweep(payload.now if payload else None)
        return SweepResponse.from_report(report)
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sweep temporarily unavailable, retry later",
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected sweep failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run sweep",
        ) from exc
