"""Async OIDC relying-party client.

Drives the authorization-code-with-PKCE handshake against the IdP named by
the configured issuer: builds authorization URLs, exchanges codes, refreshes
tokens, and verifies ID tokens against the published JWKS.

Design decisions:
- One httpx.AsyncClient per OIDCClient, created lazily unless the caller
  supplies one. The client also serves discovery and JWKS fetches, so the
  lifespan owns a single connection pool.
- Endpoints always come from the discovery document; nothing is derived
  from the issuer URL by convention.
- No retries: authorization codes are single-use, and a retried refresh
  grant can race token rotation at the IdP.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from clavis.config import OIDCSettings
from clavis.discovery import DiscoveryCache
from clavis.exceptions import TokenExchangeError, TokenRefreshError
from clavis.jwks import JWKSProvider
from clavis.models import (
    AuthorizationOptions,
    AuthorizationRequest,
    CodeExchangeResult,
    DiscoveryDocument,
    OIDCUser,
    TokenSet,
)
from clavis.pkce import derive_code_challenge, generate_code_verifier, generate_state

logger = logging.getLogger(__name__)

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Keycloak-style hint for the registration screen.
_SCREEN_HINT_PARAMS: dict[str, dict[str, str]] = {
    "sign-up": {"kc_action": "register"},
    "sign-in": {},
}

# Callback parameters consumed by the relying party, never forwarded.
_CALLBACK_ONLY_PARAMS = frozenset({"state", "session_state"})


def _with_query(url: str, params: list[tuple[str, str]]) -> str:
    """Append parameters to a URL, preserving any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + params
    return urlunsplit(parts._replace(query=urlencode(query)))


def _error_body(response: httpx.Response) -> dict[str, Any]:
    content_type = response.headers.get("content-type", "")
    if not content_type.startswith("application/json"):
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class OIDCClient:
    """Async client for the IdP's discovery, authorization and token endpoints.

    Supports both per-process and shared httpx.AsyncClient modes:
    - If ``client`` is provided, it is reused across calls (caller manages lifecycle).
    - If ``client`` is omitted, an internal client is created lazily on first use.
      Call :meth:`aclose` to release the internal client when done.

    Args:
        settings: Resolved OIDC settings.
        client: Optional shared httpx.AsyncClient instance.
        discovery_cache: Optional discovery cache (one is created otherwise).
        jwks_provider: Optional key provider; by default one is created for
            the discovered ``jwks_uri`` on first verification.
    """

    def __init__(
        self,
        settings: OIDCSettings,
        client: httpx.AsyncClient | None = None,
        discovery_cache: DiscoveryCache | None = None,
        jwks_provider: JWKSProvider | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = settings.http_timeout
        self._external_client = client is not None
        self._client: httpx.AsyncClient | None = client
        self._discovery = discovery_cache or DiscoveryCache(
            settings.issuer, timeout=settings.http_timeout
        )
        self._jwks: JWKSProvider | None = jwks_provider

    @property
    def settings(self) -> OIDCSettings:
        return self._settings

    @property
    def discovery_cache(self) -> DiscoveryCache:
        return self._discovery

    def _get_client(self) -> httpx.AsyncClient:
        """Return the shared or lazily-created httpx.AsyncClient."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the internal httpx.AsyncClient if we own it.

        No-op if the client was provided externally or not yet created.
        """
        if self._client is not None and not self._external_client:
            await self._client.aclose()
            self._client = None

    async def discover(self) -> DiscoveryDocument:
        """Return the (cached) discovery document.

        Raises:
            DiscoveryError: If the document cannot be fetched or parsed.
        """
        return await self._discovery.get(self._get_client())

    def jwks_provider(self, discovery: DiscoveryDocument) -> JWKSProvider:
        """Return the key provider for the discovered ``jwks_uri``."""
        if self._jwks is None or self._jwks.jwks_uri != discovery.jwks_uri:
            self._jwks = JWKSProvider(
                discovery.jwks_uri, self._get_client(), timeout=self._timeout
            )
        return self._jwks

    def invalidate_caches(self) -> None:
        """Drop the cached discovery document and signing keys."""
        self._discovery.invalidate()
        if self._jwks is not None:
            self._jwks.invalidate()

    async def begin_authorization(
        self, options: AuthorizationOptions | None = None
    ) -> AuthorizationRequest:
        """Build an authorization URL with fresh PKCE and state values.

        Args:
            options: Per-call overrides (redirect URI, scope, screen hint, prompt).

        Returns:
            AuthorizationRequest whose ``state`` is always a fresh random token.

        Raises:
            DiscoveryError: If IdP metadata is unavailable.
        """
        options = options or AuthorizationOptions()
        discovery = await self.discover()

        code_verifier = generate_code_verifier()
        state = generate_state()
        params: list[tuple[str, str]] = [
            ("client_id", self._settings.client_id),
            ("redirect_uri", options.redirect_uri or self._settings.redirect_uri),
            ("response_type", "code"),
            ("scope", options.scope or self._settings.scope),
            ("code_challenge", derive_code_challenge(code_verifier)),
            ("code_challenge_method", "S256"),
            ("state", state),
        ]
        if options.prompt:
            params.append(("prompt", options.prompt))
        if options.screen_hint:
            params.extend(_SCREEN_HINT_PARAMS.get(options.screen_hint, {}).items())
        params.extend(self._settings.additional_params.items())

        url = _with_query(discovery.authorization_endpoint, params)
        logger.debug(
            "oidc_authorization_url_built",
            extra={"screen_hint": options.screen_hint, "prompt": options.prompt},
        )
        return AuthorizationRequest(url=url, code_verifier=code_verifier, state=state)

    async def exchange_code(
        self,
        discovery: DiscoveryDocument,
        callback_url: str,
        code_verifier: str,
        redirect_uri: str | None = None,
    ) -> CodeExchangeResult:
        """Exchange the authorization code on a callback URL for tokens (PKCE).

        Args:
            discovery: IdP metadata.
            callback_url: Full callback URL including its query string.
            code_verifier: PKCE verifier recovered from the pending state.
            redirect_uri: Must match the value used in the authorization
                request; defaults to the configured redirect URI.

        Returns:
            CodeExchangeResult with the mapped user and the token set.

        Raises:
            TokenExchangeError: If the callback carries an error, lacks a
                code, names a different issuer, or the IdP rejects the grant.
            IDTokenVerificationError: If the returned ID token does not verify.
            JWKSUnavailableError: If the signing keys cannot be fetched.
        """
        params = {
            key: value
            for key, value in parse_qsl(urlsplit(callback_url).query, keep_blank_values=True)
            if key not in _CALLBACK_ONLY_PARAMS
        }

        issuer = params.get("iss")
        if issuer is not None and issuer.rstrip("/") != discovery.issuer.rstrip("/"):
            raise TokenExchangeError(
                0, "invalid_issuer", "Authorization response issuer does not match"
            )
        if params.get("error"):
            raise TokenExchangeError(0, params["error"], params.get("error_description", ""))
        code = params.get("code")
        if not code:
            raise TokenExchangeError(
                0, "invalid_request", "Authorization response is missing the code parameter"
            )

        tokens = await self._token_request(
            discovery.token_endpoint,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri or self._settings.redirect_uri,
                "client_id": self._settings.client_id,
                "client_secret": self._settings.client_secret,
                "code_verifier": code_verifier,
            },
            TokenExchangeError,
        )

        if tokens.id_token:
            claims = await self.verify_id_token(discovery, tokens.id_token)
            user = OIDCUser.from_claims(claims)
        else:
            user = await self.fetch_user_info(discovery, tokens.access_token)

        logger.info("oidc_code_exchanged", extra={"user_id": user.id})
        return CodeExchangeResult(user=user, tokens=tokens)

    async def verify_id_token(
        self,
        discovery: DiscoveryDocument,
        id_token: str,
        verify_exp: bool = True,
    ) -> dict[str, Any]:
        """Verify an ID token issued to this client by the discovered issuer.

        Raises:
            IDTokenVerificationError: On any verification failure.
            JWKSUnavailableError: If the signing keys cannot be fetched.
        """
        return await self.jwks_provider(discovery).verify_id_token(
            id_token,
            issuer=discovery.issuer,
            audience=self._settings.client_id,
            verify_exp=verify_exp,
        )

    async def fetch_user_info(self, discovery: DiscoveryDocument, access_token: str) -> OIDCUser:
        """Fetch identity claims from the userinfo endpoint.

        Raises:
            TokenExchangeError: If the IdP has no userinfo endpoint or the
                request fails.
        """
        if not discovery.userinfo_endpoint:
            raise TokenExchangeError(
                0, "userinfo_unavailable", "IdP does not advertise a userinfo endpoint"
            )
        client = self._get_client()
        try:
            response = await client.get(
                discovery.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oidc_userinfo_failed", extra={"status": exc.response.status_code}
            )
            raise TokenExchangeError(
                exc.response.status_code, "userinfo_failed", str(exc)
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenExchangeError(0, "userinfo_failed", str(exc)) from exc
        except ValueError as exc:
            raise TokenExchangeError(
                response.status_code, "userinfo_failed", "Response is not valid JSON"
            ) from exc

        if not isinstance(body, dict) or not body.get("sub"):
            raise TokenExchangeError(
                response.status_code, "userinfo_failed", "Response has no subject"
            )
        return OIDCUser.from_claims(body)

    async def refresh(self, discovery: DiscoveryDocument, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new token set.

        If the IdP does not rotate refresh tokens, the supplied one is kept.

        Raises:
            TokenRefreshError: On 4xx/5xx (expired/revoked token) or transport failure.
        """
        tokens = await self._token_request(
            discovery.token_endpoint,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._settings.client_id,
                "client_secret": self._settings.client_secret,
            },
            TokenRefreshError,
        )
        if tokens.refresh_token is None:
            tokens = tokens.model_copy(update={"refresh_token": refresh_token})
        logger.info(
            "oidc_token_refreshed",
            extra={"rotated": tokens.refresh_token != refresh_token},
        )
        return tokens

    def build_end_session_url(
        self,
        discovery: DiscoveryDocument,
        id_token_hint: str | None = None,
        post_logout_redirect_uri: str | None = None,
    ) -> str | None:
        """Build an RP-initiated logout URL.

        Returns:
            The URL, or ``None`` if the IdP has no ``end_session_endpoint``.
        """
        if not discovery.end_session_endpoint:
            return None
        params: list[tuple[str, str]] = [("client_id", self._settings.client_id)]
        if id_token_hint:
            params.append(("id_token_hint", id_token_hint))
        if post_logout_redirect_uri:
            params.append(("post_logout_redirect_uri", post_logout_redirect_uri))
        return _with_query(discovery.end_session_endpoint, params)

    async def _token_request(
        self,
        endpoint: str,
        data: dict[str, str],
        error_cls: type[TokenExchangeError],
    ) -> TokenSet:
        """Send a grant to the token endpoint.

        Raises:
            TokenExchangeError: ``error_cls`` on non-2xx responses, transport
                failure, or an unusable response body.
        """
        client = self._get_client()
        try:
            response = await client.post(
                endpoint,
                data=data,
                headers={"Content-Type": _FORM_CONTENT_TYPE},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = _error_body(exc.response)
            logger.warning(
                "oidc_token_request_rejected",
                extra={
                    "grant_type": data["grant_type"],
                    "status": exc.response.status_code,
                    "error": body.get("error", "unknown"),
                },
            )
            raise error_cls(
                status_code=exc.response.status_code,
                error=str(body.get("error", "unknown")),
                error_description=str(body.get("error_description", exc)),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "oidc_token_request_connection_error",
                extra={"grant_type": data["grant_type"]},
            )
            raise error_cls(0, "server_error", f"{type(exc).__name__}: {exc}") from exc

        try:
            body_json = response.json()
            if not isinstance(body_json, dict):
                raise ValueError("Token response is not a JSON object")
            return TokenSet.from_response(body_json)
        except ValueError as exc:
            raise error_cls(response.status_code, "invalid_token_response", str(exc)) from exc
