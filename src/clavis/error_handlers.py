"""RFC 7807 Problem Details responses for session-core failures.

User-facing authentication failures are redirects (see :mod:`clavis.handlers`);
only configuration, IdP availability and API-style "not signed in" failures
become problem documents:

- ConfigurationError -> 500
- DiscoveryError (including JWKSUnavailableError) -> 503
- NotAuthenticatedError -> 401 with ``WWW-Authenticate``

Usage:
    from clavis.error_handlers import register_exception_handlers

    app = FastAPI()
    register_exception_handlers(app)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clavis.exceptions import (
    AuthError,
    ConfigurationError,
    DiscoveryError,
    NotAuthenticatedError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"

_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "cookie", "verifier")


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response model.

    ``error_code`` and ``context`` are extension members.
    """

    type: str
    title: str
    status: int = Field(ge=400, le=599)
    detail: str
    instance: str | None = None
    error_code: str | None = None
    context: dict[str, Any] | None = None


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop credential-bearing keys and stringify anything non-primitive."""
    if not context:
        return None
    sanitized: dict[str, Any] = {}
    for key, value in context.items():
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            continue
        if value is None or isinstance(value, (str, int, float, bool)):
            sanitized[key] = value
        else:
            sanitized[key] = str(value)
    return sanitized or None


def _create_problem_response(problem: ProblemDetail) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_MEDIA_TYPE,
    )


def problem_response(path: str, exc: AuthError) -> JSONResponse:
    """Render an AuthError as a problem+json response.

    Usable from middleware, where raised exceptions cannot reach the
    application's exception handlers.
    """
    if isinstance(exc, NotAuthenticatedError):
        context = {"authorization_url": exc.authorization_url} if exc.authorization_url else None
        problem = ProblemDetail(
            type="/errors/not-authenticated",
            title="Unauthorized",
            status=401,
            detail=exc.message,
            instance=path,
            error_code=exc.error_code,
            context=context,
        )
        response = _create_problem_response(problem)
        response.headers["WWW-Authenticate"] = 'Bearer realm="app", error="login_required"'
        return response

    if isinstance(exc, DiscoveryError):
        status, title = 503, "Identity Provider Unavailable"
    elif isinstance(exc, ConfigurationError):
        status, title = 500, "Authentication Misconfigured"
    else:
        status, title = 500, "Authentication Error"

    logger.error(
        "auth_problem_response",
        extra={"error_code": exc.error_code, "status": status, "path": path},
    )
    problem = ProblemDetail(
        type=f"/errors/{exc.error_code.lower().replace('_', '-')}",
        title=title,
        status=status,
        detail=exc.message,
        instance=path,
        error_code=exc.error_code,
        context=_sanitize_context(exc.context),
    )
    return _create_problem_response(problem)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate an AuthError raised in a route or dependency."""
    return problem_response(str(request.url.path), exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Register the session-core exception handlers on a FastAPI app."""
    for exc_type in (ConfigurationError, DiscoveryError, NotAuthenticatedError):
        app.add_exception_handler(exc_type, auth_error_handler)  # type: ignore[arg-type]
