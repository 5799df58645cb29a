"""Session lifecycle: login, verification, logout and change notification."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from console_runtime.auth.token_store import TokenStore
from console_runtime.config import RuntimeSettings
from console_runtime.errors import (
    AuthenticationError,
    ConsoleRuntimeError,
    ProtocolError,
)
from console_runtime.events import CallbackRegistry, Disposer
from console_runtime.network.gateway import RequestGateway

LOGGER = logging.getLogger(__name__)
_LISTENERS = "session"


class SessionStatus(enum.Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    VERIFYING = "VERIFYING"
    AUTHENTICATED = "AUTHENTICATED"


@dataclass(frozen=True)
class Session:
    """Read-only snapshot of the current session."""

    token: Optional[str]
    user: Optional[Dict[str, Any]]
    status: SessionStatus


@dataclass(frozen=True)
class SessionChange:
    """Payload delivered to session listeners on every transition."""

    reason: str
    previous: SessionStatus
    status: SessionStatus
    user: Optional[Dict[str, Any]] = None
    error: Optional[ConsoleRuntimeError] = None
    at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


@dataclass(frozen=True)
class LoginResult:
    success: bool
    user: Optional[Dict[str, Any]] = None
    error: Optional[ConsoleRuntimeError] = None


class SessionManager:
    """Owns the process-wide session and is the only writer of the token store."""

    def __init__(self, settings: RuntimeSettings, token_store: TokenStore, gateway: RequestGateway) -> None:
        self._settings = settings
        self._store = token_store
        self._gateway = gateway
        self._status = SessionStatus.UNAUTHENTICATED
        self._user: Optional[Dict[str, Any]] = token_store.get_user() if token_store.has_token else None
        self._listeners = CallbackRegistry("session listener")
        self._background: Set[asyncio.Task[Any]] = set()
        self.last_error: Optional[ConsoleRuntimeError] = None

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.AUTHENTICATED

    def snapshot(self) -> Session:
        return Session(token=self._store.get_token(), user=self._user, status=self._status)

    def on_change(self, callback: Callable[[SessionChange], Any]) -> Disposer:
        """Register a listener for session transitions; returns its disposer."""

        return self._listeners.add(_LISTENERS, callback)

    async def login(self, identifier: str, secret: str) -> LoginResult:
        """Exchange credentials for a token.

        Failures are returned as a classified error and leave the store and
        status untouched. Logins are never retried.
        """

        body = {
            self._settings.login_identifier_field: identifier,
            self._settings.login_secret_field: secret,
        }
        try:
            response = await self._gateway.post(
                self._settings.login_path,
                json=body,
                authenticated=False,
                retry=False,
                invalidate_on_unauthorized=False,
            )
            if not response.success:
                raise AuthenticationError(response.error or "Login failed")
            token, user = _extract_credentials(response.data)
            if not token:
                raise ProtocolError("Login response did not include a token")
        except ConsoleRuntimeError as exc:
            LOGGER.info("Login rejected for %s: %s", identifier, exc)
            self.last_error = exc
            return LoginResult(success=False, error=exc)

        self._store.save(token, user)
        self._user = user
        self.last_error = None
        LOGGER.info("Login succeeded for %s", identifier)
        self._transition(SessionStatus.AUTHENTICATED, "login")
        return LoginResult(success=True, user=user)

    async def verify_session(self) -> bool:
        """Confirm the stored token with the backend.

        Without a token this returns ``False`` and makes no call. Any failure
        clears the stored credential, so the session is never left ambiguous.
        """

        token = self._store.get_token()
        if not token:
            if self._status is not SessionStatus.UNAUTHENTICATED:
                self._user = None
                self._transition(SessionStatus.UNAUTHENTICATED, "verify")
            return False

        self._transition(SessionStatus.VERIFYING, "verify")
        try:
            response = await self._gateway.post(
                self._settings.verify_path,
                authenticated=True,
                retry=False,
                invalidate_on_unauthorized=False,
            )
            if not response.success:
                raise AuthenticationError(response.error or "Session rejected")
        except ConsoleRuntimeError as exc:
            if self._store.get_token() != token:
                LOGGER.info("Ignoring verification failure for a replaced session: %s", exc)
                return self._store.get_token() is not None and self.is_authenticated
            LOGGER.info("Session verification failed: %s", exc)
            self.last_error = exc
            self._store.clear()
            self._user = None
            self._transition(SessionStatus.UNAUTHENTICATED, "verify", error=exc)
            return False

        if self._store.get_token() != token:
            # logged out (or re-logged in) while the call was in flight
            return self._store.get_token() is not None and self.is_authenticated

        _, user = _extract_credentials(response.data)
        if user:
            self._store.set_user(user)
            self._user = user
        else:
            self._user = self._store.get_user()
        self.last_error = None
        self._transition(SessionStatus.AUTHENTICATED, "verify")
        return True

    async def refresh_token(self) -> str:
        """Swap the current token for a fresh one issued by the backend."""

        if not self._store.get_token():
            raise AuthenticationError("No session token to refresh")
        response = await self._gateway.post(self._settings.refresh_path, retry=False)
        if not response.success:
            raise AuthenticationError(response.error or "Token refresh rejected")
        token, user = _extract_credentials(response.data)
        if not token:
            raise ProtocolError("Refresh response did not include a token")
        self._store.save(token, user or self._user)
        if user:
            self._user = user
        self._transition(SessionStatus.AUTHENTICATED, "refresh")
        return token

    async def logout(self) -> None:
        """Clear the session locally, then notify the backend without waiting."""

        token = self._store.get_token()
        self._clear("logout")
        if not token:
            return
        task = asyncio.create_task(self._notify_logout(token), name="session-logout")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def invalidate(self, token: Optional[str] = None, *, reason: str = "unauthorized") -> None:
        """Drop the session after the backend refused the credential.

        ``token`` is the credential the refused call carried. When it is no
        longer the stored one the session was already replaced and is kept.
        """

        if token is not None and token != self._store.get_token():
            LOGGER.debug("Ignoring %s for a token that is no longer current", reason)
            return
        LOGGER.info("Invalidating session (%s)", reason)
        self._clear("invalidate")

    async def aclose(self, timeout: float = 5.0) -> None:
        """Wait for outstanding best-effort logout calls, cancelling stragglers."""

        pending = list(self._background)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        for task in still_running:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _notify_logout(self, token: str) -> None:
        try:
            await self._gateway.post(
                self._settings.logout_path,
                bearer=token,
                retry=False,
                invalidate_on_unauthorized=False,
            )
        except ConsoleRuntimeError as exc:
            LOGGER.warning("Server-side logout failed: %s", exc)

    def _clear(self, reason: str) -> None:
        had_state = self._store.has_token or self._user is not None
        self._store.clear()
        self._user = None
        if had_state or self._status is not SessionStatus.UNAUTHENTICATED:
            self._transition(SessionStatus.UNAUTHENTICATED, reason)

    def _transition(
        self,
        status: SessionStatus,
        reason: str,
        *,
        error: Optional[ConsoleRuntimeError] = None,
    ) -> None:
        previous = self._status
        self._status = status
        LOGGER.debug("Session %s -> %s (%s)", previous.value, status.value, reason)
        change = SessionChange(reason=reason, previous=previous, status=status, user=self._user, error=error)
        self._listeners.emit(_LISTENERS, change)


def _extract_credentials(data: Any) -> tuple[Optional[str], Optional[Dict[str, Any]]]:
    if not isinstance(data, dict):
        return None, None
    token = data.get("token")
    user = data.get("user")
    return (
        token if isinstance(token, str) and token else None,
        user if isinstance(user, dict) else None,
    )


__all__ = [
    "LoginResult",
    "Session",
    "SessionChange",
    "SessionManager",
    "SessionStatus",
]
