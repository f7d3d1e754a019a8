"""Shared-token authentication for team members and background jobs."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Optional

from backend.utils.clock import Clock, ensure_utc, utc_now
from backend.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class AccessTokenNotConfiguredError(AuthenticationError):
    """Raised when ACCESS_TOKEN is missing."""


class InvalidTokenError(AuthenticationError):
    """Raised when a provided token is invalid."""


@dataclass(frozen=True)
class _Session:
    user_id: str
    expires_at: datetime


class AuthService:
    """Issues one expiring bearer session per user and checks the job token."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or utc_now
        self._sessions: dict[str, _Session] = {}
        self._token_by_user: dict[str, str] = {}
        self._lock = RLock()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.access_token)

    @property
    def job_auth_enabled(self) -> bool:
        return bool(self._settings.job_token)

    def login(self, user_id: str, provided_access_token: str) -> str:
        """Replace the user's previous session with a fresh one."""
        if not self._settings.access_token:
            raise AccessTokenNotConfiguredError(
                "ACCESS_TOKEN is not configured. Set ACCESS_TOKEN in environment variables."
            )
        if not secrets.compare_digest(provided_access_token, self._settings.access_token):
            raise InvalidTokenError("Invalid access token")
        now = ensure_utc(self._clock())
        session_token = secrets.token_urlsafe(32)
        with self._lock:
            self._drop_expired(now)
            previous = self._token_by_user.pop(user_id, None)
            if previous is not None:
                self._sessions.pop(previous, None)
            self._sessions[session_token] = _Session(
                user_id=user_id,
                expires_at=now + timedelta(minutes=self._settings.session_ttl_minutes),
            )
            self._token_by_user[user_id] = session_token
        return session_token

    def resolve_user(self, bearer_token: str) -> str:
        now = ensure_utc(self._clock())
        with self._lock:
            session = self._sessions.get(bearer_token)
            if session is None:
                raise InvalidTokenError("Invalid bearer token. Login first.")
            if session.expires_at <= now:
                self._sessions.pop(bearer_token, None)
                self._token_by_user.pop(session.user_id, None)
                raise InvalidTokenError("Session expired. Login again.")
            return session.user_id

    def validate_job_token(self, bearer_token: str) -> None:
        if not self.job_auth_enabled:
            return
        if not secrets.compare_digest(bearer_token, self._settings.job_token):
            raise InvalidTokenError("Invalid job token")

    def _drop_expired(self, now: datetime) -> None:
        expired = [token for token, session in self._sessions.items() if session.expires_at <= now]
        for token in expired:
            session = self._sessions.pop(token)
            if self._token_by_user.get(session.user_id) == token:
                del self._token_by_user[session.user_id]
