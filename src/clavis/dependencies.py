"""FastAPI dependency functions for the cookie session.

Usage:
    from clavis.dependencies import CurrentAuth, SessionUser

    @router.get("/profile")
    def profile(user: SessionUser):
        return {"email": user.user.email}

    @router.get("/")
    def home(auth: CurrentAuth):
        return auth.to_dict()
"""

# NOTE: Do NOT use ``from __future__ import annotations`` here.
# FastAPI resolves dependency parameters from runtime annotations.

from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, Request

from clavis.context import OIDCContext, get_default_context
from clavis.exceptions import NotAuthenticatedError
from clavis.middleware.session import get_current_auth as _get_auth_from_context
from clavis.models import AuthInfo, UserInfo

if TYPE_CHECKING:
    from clavis.session import AuthResult


def get_oidc_context(request: Request) -> OIDCContext:
    """The application's OIDCContext (lifespan-installed or process default)."""
    context = getattr(request.app.state, "oidc_context", None)
    return context if isinstance(context, OIDCContext) else get_default_context()


def _middleware_result(request: Request) -> "AuthResult | None":
    result = getattr(request.state, "auth", None)
    return result if result is not None else _get_auth_from_context()


async def get_current_auth(
    request: Request,
    context: Annotated[OIDCContext, Depends(get_oidc_context)],
) -> AuthInfo:
    """FastAPI dependency returning the identity for this request.

    Uses the result computed by OIDCSessionMiddleware when present;
    otherwise reads the session cookies without network validation.
    """
    result = _middleware_result(request)
    if result is not None:
        return result.auth
    return context.session_manager.get_auth(request.cookies)


# Type alias for cleaner endpoint signatures
CurrentAuth = Annotated[AuthInfo, Depends(get_current_auth)]


async def require_session(request: Request, auth: CurrentAuth) -> UserInfo:
    """FastAPI dependency that rejects anonymous requests.

    Raises:
        NotAuthenticatedError: If no session is present (401 once
            :func:`clavis.error_handlers.register_exception_handlers` is
            installed). Carries the authorization URL the middleware
            prepared, if any.
    """
    if isinstance(auth, UserInfo):
        return auth
    result = _middleware_result(request)
    raise NotAuthenticatedError(
        authorization_url=result.authorization_url if result is not None else None
    )


SessionUser = Annotated[UserInfo, Depends(require_session)]
