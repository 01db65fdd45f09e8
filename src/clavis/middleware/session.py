"""Cookie session middleware.

Runs the session state machine once per request, exposes the result to
handlers, and applies the resulting cookies and marker headers to the
response.

Middleware position in stack (LIFO registration order):
  Request -> RequestId -> OIDCSession -> RequestContext -> CORS -> Route

Design decisions:
- BaseHTTPMiddleware, as for the other auth middleware. Errors are
  rendered as problem+json here because BaseHTTPMiddleware dispatch cannot
  propagate exceptions to the application's exception handlers.
- Unauthenticated requests are only redirected under ``protected_prefixes``;
  elsewhere the handler runs with an anonymous identity and the pending
  authorization is still prepared.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from clavis.context import OIDCContext, get_default_context
from clavis.error_handlers import problem_response
from clavis.exceptions import ConfigurationError, DiscoveryError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

    from clavis.session import AuthResult

logger = logging.getLogger(__name__)

# Default paths excluded from session handling.
_DEFAULT_EXCLUDED_PREFIXES = (
    "/health",
    "/ready",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/auth/",
)

_current_auth: ContextVar[AuthResult | None] = ContextVar("oidc_current_auth", default=None)


def get_current_auth() -> AuthResult | None:
    """Session result for the current request, or ``None`` outside the middleware."""
    return _current_auth.get()


class OIDCSessionMiddleware(BaseHTTPMiddleware):
    """Per-request session classification, refresh and login redirect.

    Request flow:
    1. Skip excluded paths and requests this middleware already handled
    2. Run SessionManager.update_session on the request cookies
    3. Store the AuthResult on ``request.state.auth`` and in a ContextVar
    4. Protected path without a session -> 302 to the IdP
    5. Otherwise call the next middleware/handler
    6. Apply result cookies and marker headers to the response
    """

    def __init__(
        self,
        app: Any,
        context: OIDCContext | None = None,
        protected_prefixes: tuple[str, ...] = (),
        excluded_prefixes: tuple[str, ...] | None = None,
    ) -> None:
        """Initialize session middleware.

        Args:
            app: ASGI application (passed by Starlette).
            context: Runtime context; defaults to ``app.state.oidc_context``
                and then to the process default.
            protected_prefixes: Path prefixes that require a session.
            excluded_prefixes: Path prefixes to skip entirely. Defaults to
                /health, /ready, /docs, /openapi.json, /redoc, /api/auth/.
        """
        super().__init__(app)
        self._context = context
        self._protected_prefixes = protected_prefixes
        self._excluded_prefixes = (
            excluded_prefixes if excluded_prefixes is not None else _DEFAULT_EXCLUDED_PREFIXES
        )

    def _resolve_context(self, request: Request) -> OIDCContext:
        if self._context is not None:
            return self._context
        context = getattr(request.app.state, "oidc_context", None)
        return context if isinstance(context, OIDCContext) else get_default_context()

    def _is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self._protected_prefixes)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        path = request.url.path
        if any(path.startswith(prefix) for prefix in self._excluded_prefixes):
            return await call_next(request)

        if getattr(request.state, "auth", None) is not None:
            logger.warning("oidc_session_middleware_reentered", extra={"path": path})
            return await call_next(request)

        try:
            manager = self._resolve_context(request).session_manager
            result = await manager.update_session(
                str(request.url), request.cookies, headers=request.headers
            )
        except (ConfigurationError, DiscoveryError) as exc:
            return problem_response(path, exc)

        request.state.auth = result
        token = _current_auth.set(result)
        try:
            if result.authorization_url and self._is_protected(path):
                logger.info("oidc_login_redirect", extra={"path": path, "state": result.state})
                response: Response = RedirectResponse(result.authorization_url, status_code=302)
            else:
                response = await call_next(request)
        finally:
            _current_auth.reset(token)

        for cookie in result.cookies:
            cookie.apply(response)
        for name, value in result.headers.items():
            response.headers[name] = value
        return response
