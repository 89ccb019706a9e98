"""Admin token authentication with per-admin bearer sessions."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from admission.utils.config import Settings, get_settings


DEFAULT_ADMIN_ID = "admin"


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


@dataclass(frozen=True)
class _Session:
    admin_id: str
    issued_at: float


class AuthService:
    """Exchanges the shared admin token for a session bound to an admin id.

    Decisions are attributed to that admin id, so each login gets its own
    session token. Sessions expire after `session_ttl_seconds`, and each admin
    keeps at most `max_sessions_per_admin`; the oldest is dropped first.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._sessions: dict[str, _Session] = {}
        self._lock = Lock()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    @property
    def active_sessions(self) -> int:
        with self._lock:
            self._expire_locked(self._clock())
            return len(self._sessions)

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        return self._settings.admin_token

    def _expire_locked(self, now: float) -> None:
        ttl = self._settings.session_ttl_seconds
        expired = [token for token, session in self._sessions.items() if now - session.issued_at >= ttl]
        for token in expired:
            del self._sessions[token]

    def login(self, provided_admin_token: str, admin_id: str = DEFAULT_ADMIN_ID) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_admin_token, expected):
            raise InvalidAdminTokenError("Invalid admin token")
        admin_id = admin_id.strip() or DEFAULT_ADMIN_ID
        session_token = secrets.token_urlsafe(32)
        now = self._clock()
        with self._lock:
            self._expire_locked(now)
            # Dicts keep insertion order, so the first match is the oldest session.
            own = [token for token, session in self._sessions.items() if session.admin_id == admin_id]
            for token in own[: max(len(own) - self._settings.max_sessions_per_admin + 1, 0)]:
                del self._sessions[token]
            self._sessions[session_token] = _Session(admin_id=admin_id, issued_at=now)
        return session_token

    def resolve_admin(self, bearer_token: Optional[str]) -> str:
        """Return the admin id behind a bearer token."""
        if not self.auth_enabled:
            return DEFAULT_ADMIN_ID
        if not bearer_token:
            raise InvalidAdminTokenError("Authorization header with Bearer token is required")
        with self._lock:
            self._expire_locked(self._clock())
            sessions = list(self._sessions.items())
        if not sessions:
            raise InvalidAdminTokenError("No active session. Login first.")
        for session_token, session in sessions:
            if secrets.compare_digest(bearer_token, session_token):
                return session.admin_id
        raise InvalidAdminTokenError("Invalid bearer token")
