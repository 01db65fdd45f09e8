"""Per-request session state machine.

Every request is classified from its cookies alone:

- NO_SESSION: no readable session; a fresh authorization is started.
- VALID_SESSION: the session verifies; its identity is exposed.
- EXPIRED_OR_INVALID: the session failed verification. With a refresh token
  the refresh grant is tried and, on success, the request continues as
  VALID_SESSION with re-issued cookies. Otherwise the session cookies are
  deleted and a fresh authorization is started.

The manager never touches a response object. It returns an
:class:`AuthResult` describing cookies and headers, and the framework seam
(middleware or route) applies them.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from urllib.parse import urljoin, urlsplit

import jwt as pyjwt

from clavis.cookies import CookieDescriptor
from clavis.events import AuthEventLogger
from clavis.exceptions import DiscoveryError, IDTokenVerificationError, TokenRefreshError
from clavis.models import (
    AuthInfo,
    AuthorizationOptions,
    NoUserInfo,
    OIDCUser,
    PendingAuthState,
    Session,
    UserInfo,
)
from clavis.oidc_client import OIDCClient
from clavis.session_store import CookieSessionStore

logger = logging.getLogger(__name__)

MIDDLEWARE_HEADER = "x-oidc-middleware"
URL_HEADER = "x-url"

Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


class SessionState(StrEnum):
    NO_SESSION = "no_session"
    VALID_SESSION = "valid_session"
    EXPIRED_OR_INVALID = "expired_or_invalid"


@dataclass(frozen=True, slots=True)
class AuthResult:
    """Outcome of :meth:`SessionManager.update_session`.

    Attributes:
        state: Classification of the incoming session.
        auth: Identity view for downstream handlers.
        authorization_url: Set when a new authorization was started.
        cookies: Cookies to emit on the response.
        headers: Marker headers to emit on the response.
        session: The (possibly refreshed) session, when valid.
    """

    state: SessionState
    auth: AuthInfo
    authorization_url: str | None = None
    cookies: tuple[CookieDescriptor, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)
    session: Session | None = None

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.auth, UserInfo)


@dataclass(frozen=True, slots=True)
class SignOutResult:
    redirect_url: str
    cookies: tuple[CookieDescriptor, ...]


def safe_return_path(value: str | None, default: str = "/") -> str:
    """Reduce a caller-supplied return target to a same-origin path.

    Anything carrying a scheme or host, protocol-relative (``//``) or
    backslash tricks, or control characters yields ``default``.

    Example:
        >>> safe_return_path("/reports?year=2024")
        '/reports?year=2024'
        >>> safe_return_path("https://evil.example/")
        '/'
    """
    if not value or not value.startswith("/") or value.startswith(("//", "/\\")):
        return default
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        return default
    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return default
    return value


def return_pathname(url: str) -> str:
    """Path plus query of a request URL."""
    parts = urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def session_id_for(session: Session) -> str:
    """Derive the session id: the access token's ``sub`` if it is a JWT.

    The access token is decoded without verification; it is only used as an
    identifier here. Falls back to the user id for opaque tokens.
    """
    try:
        claims = pyjwt.decode(session.access_token, options={"verify_signature": False})
    except pyjwt.InvalidTokenError:
        return session.user.id
    sub = claims.get("sub")
    return sub if isinstance(sub, str) and sub else session.user.id


def user_info_for(session: Session) -> UserInfo:
    return UserInfo(
        user=session.user,
        session_id=session_id_for(session),
        access_token=session.access_token,
        id_token=session.id_token,
    )


class SessionManager:
    """Classifies, refreshes and ends cookie sessions.

    Args:
        client: OIDC client (discovery, authorization, refresh).
        store: Cookie session store.
        events: Audit event logger.
        clock: Epoch-milliseconds clock; injectable for tests.
    """

    def __init__(
        self,
        client: OIDCClient,
        store: CookieSessionStore,
        events: AuthEventLogger | None = None,
        clock: Clock = epoch_ms,
    ) -> None:
        self._client = client
        self._store = store
        self._events = events or AuthEventLogger()
        self._clock = clock

    @property
    def client(self) -> OIDCClient:
        return self._client

    @property
    def store(self) -> CookieSessionStore:
        return self._store

    @property
    def events(self) -> AuthEventLogger:
        return self._events

    def now_ms(self) -> int:
        return self._clock()

    async def update_session(
        self,
        url: str,
        cookies: Mapping[str, str],
        options: AuthorizationOptions | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> AuthResult:
        """Classify the request's session and produce the response plan.

        Args:
            url: Full request URL (echoed in ``x-url``).
            cookies: Request cookies.
            options: Authorization options for a login started here.
            headers: Request headers, for audit metadata.

        Raises:
            DiscoveryError: If IdP metadata or signing keys are needed and
                unavailable (including :class:`JWKSUnavailableError`). The
                session cookies are left untouched.
        """
        marker = {MIDDLEWARE_HEADER: "true", URL_HEADER: url}

        session = self._store.load(cookies)
        if session is None:
            return await self._start_authorization(
                SessionState.NO_SESSION, url, options, marker
            )

        reason = await self._invalid_reason(session)
        if reason is None:
            return AuthResult(
                state=SessionState.VALID_SESSION,
                auth=user_info_for(session),
                headers=marker,
                session=session,
            )

        session_id = session_id_for(session)
        if session.refresh_token:
            try:
                refreshed = await self._refresh(session)
            except (TokenRefreshError, IDTokenVerificationError) as exc:
                reason = exc.message
                logger.info("session_refresh_failed", extra={"error_code": exc.error_code})
            else:
                info = user_info_for(refreshed)
                self._events.token_refresh(refreshed.user.id, info.session_id, headers=headers)
                return AuthResult(
                    state=SessionState.VALID_SESSION,
                    auth=info,
                    cookies=tuple(self._store.save(refreshed)),
                    headers=marker,
                    session=refreshed,
                )

        self._events.session_expired(session.user.id, session_id, headers=headers, reason=reason)
        return await self._start_authorization(
            SessionState.EXPIRED_OR_INVALID,
            url,
            options,
            marker,
            cookies=tuple(self._store.clear()),
        )

    async def verify_session(self, session: Session) -> bool:
        """Whether ``session`` is usable as-is (no refresh needed)."""
        return await self._invalid_reason(session) is None

    async def _invalid_reason(self, session: Session) -> str | None:
        if session.is_expired(self._clock()):
            return "access token expired"
        if session.id_token is None:
            return None

        discovery = await self._client.discover()
        try:
            # The ID token's exp bounds the login event; session lifetime is expires_at.
            claims = await self._client.verify_id_token(
                discovery, session.id_token, verify_exp=False
            )
        except IDTokenVerificationError as exc:
            return exc.message
        if claims.get("sub") != session.user.id:
            return "ID token subject does not match the session user"
        return None

    async def _refresh(self, session: Session) -> Session:
        discovery = await self._client.discover()
        tokens = await self._client.refresh(discovery, session.refresh_token or "")

        user = session.user
        if tokens.id_token:
            claims = await self._client.verify_id_token(discovery, tokens.id_token)
            user = OIDCUser.from_claims(claims)
        return Session(
            user=user,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            id_token=tokens.id_token or session.id_token,
            expires_at=tokens.expires_at_ms(self._clock()),
        )

    async def _start_authorization(
        self,
        state: SessionState,
        url: str,
        options: AuthorizationOptions | None,
        marker: dict[str, str],
        cookies: tuple[CookieDescriptor, ...] = (),
    ) -> AuthResult:
        authorization, pending_cookie = await self.begin_authorization(
            options, default_return_to=return_pathname(url)
        )
        return AuthResult(
            state=state,
            auth=NoUserInfo(),
            authorization_url=authorization,
            cookies=(*cookies, pending_cookie),
            headers=marker,
        )

    async def begin_authorization(
        self,
        options: AuthorizationOptions | None = None,
        default_return_to: str = "/",
    ) -> tuple[str, CookieDescriptor]:
        """Start an authorization and seal its pending state.

        Returns:
            The authorization URL and the pending-state cookie to set.
        """
        options = options or AuthorizationOptions()
        request = await self._client.begin_authorization(options)
        pending = PendingAuthState(
            code_verifier=request.code_verifier,
            state=request.state,
            return_to=safe_return_path(options.return_pathname or default_return_to),
        )
        return request.url, self._store.save_pending(pending)

    def get_auth(self, cookies: Mapping[str, str]) -> AuthInfo:
        """Identity view from cookies alone, without network validation."""
        session = self._store.load(cookies)
        if session is None:
            return NoUserInfo()
        return user_info_for(session)

    async def sign_out(
        self,
        cookies: Mapping[str, str] | None = None,
        return_to: str | None = None,
        end_session: bool = False,
        headers: Mapping[str, str] | None = None,
    ) -> SignOutResult:
        """Expire every session-related cookie and plan the final redirect.

        Args:
            cookies: Request cookies, used to identify the session ending.
            return_to: Same-origin path to land on (default ``/``).
            end_session: Also end the IdP session via RP-initiated logout
                when the IdP advertises an ``end_session_endpoint``. Falls
                back to ``return_to`` when discovery is unavailable; the
                local cookies are cleared either way.
            headers: Request headers, for audit metadata.
        """
        session = self._store.load(cookies) if cookies else None
        redirect_url = safe_return_path(return_to)

        if end_session:
            redirect_url = await self._end_session_redirect(session, redirect_url)

        self._events.logout(
            session.user.id if session else None,
            session_id_for(session) if session else None,
            headers=headers,
        )
        return SignOutResult(
            redirect_url=redirect_url,
            cookies=(*self._store.clear(), self._store.clear_pending()),
        )

    async def _end_session_redirect(self, session: Session | None, local_url: str) -> str:
        try:
            discovery = await self._client.discover()
        except DiscoveryError as exc:
            logger.warning("oidc_end_session_unavailable", extra={"error_code": exc.error_code})
            return local_url
        end_session_url = self._client.build_end_session_url(
            discovery,
            id_token_hint=session.id_token if session else None,
            post_logout_redirect_uri=urljoin(self._client.settings.redirect_uri, local_url),
        )
        return end_session_url or local_url
