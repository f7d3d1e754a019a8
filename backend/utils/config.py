"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Team Availability Service"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    database_path: Path = Path("data/availability.db")
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    # Auth
    access_token: str = ""
    job_token: str = ""
    session_ttl_minutes: int = 480

    # Availability aging
    auto_away_minutes: int = 15
    arm_auto_away_on_activity: bool = False
    sweep_interval_seconds: int = 60

    # Assignment scoring
    workload_threshold_online: int = 8
    workload_threshold_busy: int = 3
    priority_score_online: int = 100
    priority_score_busy: int = 50
    workload_penalty_per_item: int = 5
    workload_penalty_cap: int = 50
    expertise_bonus: int = 25
    core_role_bonus: int = 10
    rotation_cas_max_attempts: int = 5

    # Expertise matching
    expertise_matcher_url: str = ""
    expertise_matcher_timeout_seconds: float = 10.0
    expertise_similarity_threshold: float = 0.05

    seed_demo_data: bool = True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process from environment variables."""
    defaults = Settings()
    return Settings(
        app_name=_env_str("APP_NAME", defaults.app_name),
        app_version=_env_str("APP_VERSION", defaults.app_version),
        log_level=_env_str("LOG_LEVEL", defaults.log_level),
        database_path=Path(_env_str("DATABASE_PATH", str(defaults.database_path))),
        server_host=_env_str("SERVER_HOST", defaults.server_host),
        server_port=_env_int("SERVER_PORT", defaults.server_port),
        access_token=_env_str("ACCESS_TOKEN", defaults.access_token),
        job_token=_env_str("JOB_TOKEN", defaults.job_token),
        session_ttl_minutes=_env_int("SESSION_TTL_MINUTES", defaults.session_ttl_minutes),
        auto_away_minutes=_env_int("AUTO_AWAY_MINUTES", defaults.auto_away_minutes),
        arm_auto_away_on_activity=_env_bool(
            "ARM_AUTO_AWAY_ON_ACTIVITY",
            defaults.arm_auto_away_on_activity,
        ),
        sweep_interval_seconds=_env_int(
            "SWEEP_INTERVAL_SECONDS",
            defaults.sweep_interval_seconds,
        ),
        workload_threshold_online=_env_int(
            "WORKLOAD_THRESHOLD_ONLINE",
            defaults.workload_threshold_online,
        ),
        workload_threshold_busy=_env_int(
            "WORKLOAD_THRESHOLD_BUSY",
            defaults.workload_threshold_busy,
        ),
        priority_score_online=_env_int("PRIORITY_SCORE_ONLINE", defaults.priority_score_online),
        priority_score_busy=_env_int("PRIORITY_SCORE_BUSY", defaults.priority_score_busy),
        workload_penalty_per_item=_env_int(
            "WORKLOAD_PENALTY_PER_ITEM",
            defaults.workload_penalty_per_item,
        ),
        workload_penalty_cap=_env_int("WORKLOAD_PENALTY_CAP", defaults.workload_penalty_cap),
        expertise_bonus=_env_int("EXPERTISE_BONUS", defaults.expertise_bonus),
        core_role_bonus=_env_int("CORE_ROLE_BONUS", defaults.core_role_bonus),
        rotation_cas_max_attempts=_env_int(
            "ROTATION_CAS_MAX_ATTEMPTS",
            defaults.rotation_cas_max_attempts,
        ),
        expertise_matcher_url=_env_str("EXPERTISE_MATCHER_URL", defaults.expertise_matcher_url),
        expertise_matcher_timeout_seconds=_env_float(
            "EXPERTISE_MATCHER_TIMEOUT_SECONDS",
            defaults.expertise_matcher_timeout_seconds,
        ),
        expertise_similarity_threshold=_env_float(
            "EXPERTISE_SIMILARITY_THRESHOLD",
            defaults.expertise_similarity_threshold,
        ),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", defaults.seed_demo_data),
    )
