"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.assignment_controller import router as assignment_router
from backend.controllers.availability_controller import router as availability_router
from backend.repository.data_repository import DataRepository
from backend.services.analytics_service import AnalyticsAggregator
from backend.services.assignment_service import AutoAssignmentService
from backend.services.auth_service import AuthService
from backend.services.availability_service import AvailabilityService
from backend.services.broadcast_service import AvailabilityBroadcaster
from backend.services.expertise_service import ExpertiseMatcher, build_expertise_matcher
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.services.workload_service import WorkloadSampler
from backend.utils.clock import Clock
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Clock] = None,
    matcher: Optional[ExpertiseMatcher] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    Tests pass their own settings, clock and matcher.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    broadcaster = AvailabilityBroadcaster()
    availability_service = AvailabilityService(
        repository=repository,
        settings=settings,
        broadcaster=broadcaster,
        clock=clock,
    )
    workload_sampler = WorkloadSampler(repository=repository, settings=settings)
    assignment_service = AutoAssignmentService(
        repository=repository,
        availability_service=availability_service,
        workload_sampler=workload_sampler,
        matcher=matcher or build_expertise_matcher(settings),
        settings=settings,
    )
    analytics_service = AnalyticsAggregator(repository=repository, settings=settings)
    sweeper = ScheduledTransitionSweeper(
        repository=repository,
        availability_service=availability_service,
        settings=settings,
    )
    auth_service = AuthService(settings=settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, settings)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(availability_router)
    app.include_router(assignment_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.broadcaster = broadcaster
    app.state.availability_service = availability_service
    app.state.workload_sampler = workload_sampler
    app.state.assignment_service = assignment_service
    app.state.analytics_service = analytics_service
    app.state.sweeper = sweeper
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    The schema must exist before the demo seed runs.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo mailbox (skipped if Mailboxes table not empty)")
        repository.seed_demo_data_if_empty()

    logger.info("Startup complete, system ready")


# Module-level app object for uvicorn
app = create_app()
