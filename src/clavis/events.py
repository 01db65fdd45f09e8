"""Authentication audit events.

Each login, logout, refresh and expiry is recorded as an :class:`AuthEvent`
and handed to a sink. The default sink writes the event through structlog
under the ``clavis.audit`` logger; applications can pass any callable to
forward events elsewhere. A failing sink is logged and never interrupts
authentication.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from clavis.logging import get_logger

logger = logging.getLogger(__name__)

EventSink = Callable[["AuthEvent"], None]

# Checked in order; the first present header wins.
CLIENT_IP_HEADERS: tuple[str, ...] = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "cf-connecting-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)


class AuthEventType(StrEnum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    SESSION_EXPIRED = "session_expired"


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class AuthEvent(BaseModel):
    """One audit record. Never carries tokens or cookie values."""

    model_config = ConfigDict(frozen=True)

    type: AuthEventType
    user_id: str | None = None
    email: str | None = None
    session_id: str | None = None
    timestamp: str = Field(default_factory=_utc_now_iso)
    user_agent: str | None = None
    ip: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value or None


def get_client_ip(headers: Mapping[str, str]) -> str | None:
    """Extract the originating client IP from proxy headers.

    Takes the first comma-separated entry of the first header present.

    Example:
        >>> get_client_ip({"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
        '203.0.113.7'
    """
    for name in CLIENT_IP_HEADERS:
        value = _header(headers, name)
        if value:
            return value.split(",")[0].strip()
    return None


def structlog_sink(event: AuthEvent) -> None:
    """Default sink: one structured log line per event."""
    fields = event.model_dump(exclude_none=True, exclude={"type"})
    if not fields.get("metadata"):
        fields.pop("metadata", None)
    get_logger("clavis.audit").info(event.type.value, **fields)


class AuthEventLogger:
    """Records authentication events with request metadata.

    Args:
        sink: Callable receiving each event; defaults to :func:`structlog_sink`.

    Example:
        >>> events = AuthEventLogger(sink=collected.append)
        >>> events.login_success("u-1", "a@example.com", "s-1", headers=request.headers)
    """

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink: EventSink = sink or structlog_sink

    def log(
        self,
        event_type: AuthEventType,
        headers: Mapping[str, str] | None = None,
        **fields: Any,
    ) -> AuthEvent:
        """Build an event, enrich it from request headers, and emit it."""
        if headers is not None:
            fields.setdefault("user_agent", _header(headers, "user-agent"))
            fields.setdefault("ip", get_client_ip(headers))
        event = AuthEvent(type=event_type, **fields)
        try:
            self._sink(event)
        except Exception:
            logger.exception("auth_event_sink_failed", extra={"event_type": event_type.value})
        return event

    def login_attempt(
        self, return_to: str | None = None, headers: Mapping[str, str] | None = None
    ) -> AuthEvent:
        metadata = {"return_to": return_to} if return_to else {}
        return self.log(AuthEventType.LOGIN_ATTEMPT, headers, metadata=metadata)

    def login_success(
        self,
        user_id: str,
        email: str | None,
        session_id: str,
        headers: Mapping[str, str] | None = None,
    ) -> AuthEvent:
        return self.log(
            AuthEventType.LOGIN_SUCCESS,
            headers,
            user_id=user_id,
            email=email or None,
            session_id=session_id,
        )

    def login_failure(
        self,
        error: str,
        email: str | None = None,
        headers: Mapping[str, str] | None = None,
        **metadata: Any,
    ) -> AuthEvent:
        return self.log(
            AuthEventType.LOGIN_FAILURE, headers, error=error, email=email, metadata=metadata
        )

    def logout(
        self,
        user_id: str | None,
        session_id: str | None,
        headers: Mapping[str, str] | None = None,
    ) -> AuthEvent:
        return self.log(AuthEventType.LOGOUT, headers, user_id=user_id, session_id=session_id)

    def token_refresh(
        self, user_id: str, session_id: str, headers: Mapping[str, str] | None = None
    ) -> AuthEvent:
        return self.log(
            AuthEventType.TOKEN_REFRESH, headers, user_id=user_id, session_id=session_id
        )

    def session_expired(
        self,
        user_id: str,
        session_id: str,
        headers: Mapping[str, str] | None = None,
        reason: str | None = None,
    ) -> AuthEvent:
        return self.log(
            AuthEventType.SESSION_EXPIRED,
            headers,
            user_id=user_id,
            session_id=session_id,
            error=reason,
        )
