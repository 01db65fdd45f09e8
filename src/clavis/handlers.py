"""Login and callback handlers.

Framework-neutral: each handler returns a :class:`RedirectResult` (a
``Location`` plus the cookies to set), which the routing layer turns into a
302 response.

Callback flow:
1. Recover the sealed pending state (``missing_state`` / ``invalid_state``).
2. Surface an IdP-reported ``error`` without calling the token endpoint.
3. Compare the ``state`` parameter with the sealed one (``invalid_state``).
4. Exchange the code with the stored PKCE verifier.
5. Persist the session and redirect to the stored return path.

Every terminal path clears the pending-state cookie exactly once.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit

from clavis.cookies import CookieDescriptor
from clavis.exceptions import (
    DiscoveryError,
    IDTokenVerificationError,
    InvalidStateError,
    StateError,
    TokenExchangeError,
)
from clavis.models import AuthorizationOptions, ScreenHint, Session
from clavis.session import SessionManager, safe_return_path, session_id_for

logger = logging.getLogger(__name__)

CALLBACK_ERROR = "callback_error"
UNAVAILABLE_ERROR = "temporarily_unavailable"


@dataclass(frozen=True, slots=True)
class RedirectResult:
    location: str
    cookies: tuple[CookieDescriptor, ...] = ()
    status_code: int = 302


def _error_location(base: str, error: str, description: str | None = None) -> str:
    params = {"error": error}
    if description is not None:
        params["error_description"] = description
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode(params)}"


async def begin_login(
    manager: SessionManager,
    return_to: str | None = None,
    screen_hint: ScreenHint | None = None,
    headers: Mapping[str, str] | None = None,
) -> RedirectResult:
    """Start an authorization and redirect the browser to the IdP.

    Args:
        manager: Session manager owning the client and store.
        return_to: Path to land on after login; sanitised to a same-origin
            path, default ``/``.
        screen_hint: Ask the IdP for its sign-up or sign-in screen.
        headers: Request headers, for audit metadata.

    Raises:
        DiscoveryError: If IdP metadata is unavailable.
    """
    target = safe_return_path(return_to)
    url, pending_cookie = await manager.begin_authorization(
        AuthorizationOptions(return_pathname=target, screen_hint=screen_hint)
    )
    manager.events.login_attempt(return_to=target, headers=headers)
    return RedirectResult(location=url, cookies=(pending_cookie,))


async def sign_in_url(manager: SessionManager, return_to: str | None = None) -> RedirectResult:
    return await begin_login(manager, return_to, screen_hint="sign-in")


async def sign_up_url(manager: SessionManager, return_to: str | None = None) -> RedirectResult:
    return await begin_login(manager, return_to, screen_hint="sign-up")


async def handle_callback(
    manager: SessionManager,
    request_url: str,
    cookies: Mapping[str, str],
    headers: Mapping[str, str] | None = None,
) -> RedirectResult:
    """Complete the authorization-code flow at the redirect URI.

    Every failure becomes a redirect to the configured error path with
    ``error`` and ``error_description`` query parameters, including an
    unreachable IdP (``temporarily_unavailable``).
    """
    store = manager.store
    settings = manager.client.settings
    error_base = safe_return_path(settings.error_redirect_path)
    clear_state = store.clear_pending()

    def failure(error: str, description: str | None = None) -> RedirectResult:
        manager.events.login_failure(error, headers=headers, description=description)
        return RedirectResult(
            location=_error_location(error_base, error, description),
            cookies=(clear_state,),
        )

    try:
        pending = store.load_pending(cookies)
    except StateError as exc:
        logger.warning("oidc_callback_state_rejected", extra={"error": exc.oauth_error})
        return failure(exc.oauth_error)

    params = dict(parse_qsl(urlsplit(request_url).query, keep_blank_values=True))
    if params.get("error"):
        logger.info("oidc_callback_idp_error", extra={"error": params["error"]})
        return failure(params["error"], params.get("error_description", ""))

    if not hmac.compare_digest(params.get("state", "").encode(), pending.state.encode()):
        logger.warning("oidc_callback_state_mismatch")
        return failure(InvalidStateError.oauth_error)

    try:
        discovery = await manager.client.discover()
        result = await manager.client.exchange_code(
            discovery, request_url, pending.code_verifier
        )
    except TokenExchangeError as exc:
        logger.warning(
            "oidc_callback_exchange_failed",
            extra={"error": exc.error, "status": exc.status_code},
        )
        return failure(exc.error or CALLBACK_ERROR, exc.error_description or exc.message)
    except IDTokenVerificationError as exc:
        logger.warning("oidc_callback_id_token_rejected", extra={"reason": exc.reason})
        return failure(CALLBACK_ERROR, exc.message)
    except DiscoveryError as exc:
        logger.warning("oidc_callback_idp_unavailable", extra={"error_code": exc.error_code})
        return failure(UNAVAILABLE_ERROR, exc.message)

    tokens = result.tokens
    session = Session(
        user=result.user,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        id_token=tokens.id_token,
        expires_at=tokens.expires_at_ms(manager.now_ms()),
    )
    manager.events.login_success(
        session.user.id, session.user.email, session_id_for(session), headers=headers
    )
    return RedirectResult(
        location=safe_return_path(pending.return_to),
        cookies=(*store.save(session), clear_state),
    )
