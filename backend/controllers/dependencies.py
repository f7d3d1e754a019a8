"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.domain.errors import PersistenceError
from backend.domain.models import TeamMember
from backend.repository.data_repository import DataRepository
from backend.services.analytics_service import AnalyticsAggregator
from backend.services.assignment_service import AutoAssignmentService
from backend.services.auth_service import AuthService, InvalidTokenError
from backend.services.availability_service import AvailabilityService
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.services.workload_service import WorkloadSampler
from backend.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_repository(request: Request) -> DataRepository:
    return _from_state(request, "repository", "Repository")


def get_availability_service(request: Request) -> AvailabilityService:
    return _from_state(request, "availability_service", "Availability service")


def get_workload_sampler(request: Request) -> WorkloadSampler:
    return _from_state(request, "workload_sampler", "Workload sampler")


def get_analytics_service(request: Request) -> AnalyticsAggregator:
    return _from_state(request, "analytics_service", "Analytics service")


def get_assignment_service(request: Request) -> AutoAssignmentService:
    return _from_state(request, "assignment_service", "Assignment service")


def get_sweeper(request: Request) -> ScheduledTransitionSweeper:
    return _from_state(request, "sweeper", "Sweeper")


async def get_current_user_id(
    x_user_id: str | None = Header(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> str:
    if auth_service.auth_enabled:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authorization header with Bearer token is required",
            )
        try:
            return auth_service.resolve_user(credentials.credentials)
        except InvalidTokenError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(exc),
            ) from exc
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()


async def get_mailbox_member(
    mailbox_id: int,
    user_id: str = Depends(get_current_user_id),
    repository: DataRepository = Depends(get_repository),
) -> TeamMember:
    """Resolve the caller's roster entry for the mailbox in the path."""
    try:
        mailbox = repository.get_mailbox(mailbox_id)
        member = repository.get_team_member(mailbox_id, user_id) if mailbox else None
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable",
        ) from exc
    if mailbox is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Mailbox {mailbox_id} not found",
        )
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this mailbox",
        )
    return member


async def require_job_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.job_auth_enabled:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        auth_service.validate_job_token(credentials.credentials)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
