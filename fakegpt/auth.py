"""API credential checks and admin sessions."""

import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Cookie, Header, Request

from .config import ConfigStore
from .errors import AuthenticationError, SessionExpiredError, Surface

logger = logging.getLogger("fakegpt.auth")

SESSION_COOKIE = "fakegpt_session"
SESSION_MAX_AGE = timedelta(hours=2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApiPrincipal:
    """Result of a passed credential check, handed to the API routes."""

    surface: Surface
    key_hint: str


def _hint(key: str) -> str:
    return f"...{key[-4:]}" if len(key) > 4 else "..."


def check_bearer(store: ConfigStore, authorization: Optional[str]) -> ApiPrincipal:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing or invalid authorization header", Surface.OPENAI)
    token = authorization[7:]
    if not store.check_api_key(token):
        logger.warning(f"Rejected bearer key {_hint(token)}")
        raise AuthenticationError("Invalid API key", Surface.OPENAI)
    return ApiPrincipal(Surface.OPENAI, _hint(token))


def check_x_api_key(store: ConfigStore, api_key: Optional[str]) -> ApiPrincipal:
    if not api_key:
        raise AuthenticationError("Missing required header: x-api-key", Surface.ANTHROPIC)
    if not store.check_api_key(api_key):
        logger.warning(f"Rejected x-api-key {_hint(api_key)}")
        raise AuthenticationError("Invalid API key", Surface.ANTHROPIC)
    return ApiPrincipal(Surface.ANTHROPIC, _hint(api_key))


@dataclass
class Session:
    authenticated: bool
    login_time: datetime

    @property
    def expires_at(self) -> datetime:
        return self.login_time + SESSION_MAX_AGE

    def is_expired(self, now: datetime) -> bool:
        return now - self.login_time > SESSION_MAX_AGE


@dataclass(frozen=True)
class AdminSession:
    session_id: str
    login_time: datetime
    expires_at: datetime


class SessionStore:
    """Admin sessions with an absolute lifetime counted from login."""

    def __init__(self, password: str, clock: Optional[Callable[[], datetime]] = None):
        self._password = password
        self._clock = clock or _utcnow
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def login(self, password: Optional[str]) -> AdminSession:
        if not isinstance(password, str) or not hmac.compare_digest(
            password.encode("utf-8"), self._password.encode("utf-8")
        ):
            logger.warning("Admin login failed")
            raise AuthenticationError("Invalid password")
        session_id = secrets.token_urlsafe(32)
        now = self._clock()
        session = Session(authenticated=True, login_time=now)
        with self._lock:
            for stale in [sid for sid, s in self._sessions.items() if s.is_expired(now)]:
                del self._sessions[stale]
            self._sessions[session_id] = session
        logger.info("Admin logged in")
        return AdminSession(session_id, session.login_time, session.expires_at)

    def logout(self, session_id: Optional[str]) -> None:
        if session_id is None:
            return
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("Admin logged out")

    def validate(self, session_id: Optional[str]) -> AdminSession:
        """Return the live session or raise; an expired session is destroyed first."""
        with self._lock:
            session = self._sessions.get(session_id) if session_id else None
            if session is not None and session.is_expired(self._clock()):
                del self._sessions[session_id]
                expired = True
            else:
                expired = False

        if expired:
            logger.info("Admin session expired")
            raise SessionExpiredError("Session expired, please log in again")
        if session is None or not session.authenticated:
            raise AuthenticationError("Authentication required")
        return AdminSession(session_id, session.login_time, session.expires_at)

    def status(self, session_id: Optional[str]) -> Optional[AdminSession]:
        try:
            return self.validate(session_id)
        except AuthenticationError:
            return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# --- FastAPI dependencies ---

def require_bearer(request: Request, authorization: Optional[str] = Header(default=None)) -> ApiPrincipal:
    return check_bearer(request.app.state.config, authorization)


def require_x_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)) -> ApiPrincipal:
    return check_x_api_key(request.app.state.config, x_api_key)


def require_admin(
    request: Request, session_id: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE)
) -> AdminSession:
    return request.app.state.sessions.validate(session_id)
