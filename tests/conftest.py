"""Shared fixtures: an in-process identity provider and wired session core."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from clavis.config import Configuration, OIDCSettings
from clavis.context import OIDCContext
from clavis.events import AuthEvent, AuthEventLogger
from clavis.oidc_client import OIDCClient
from clavis.session import SessionManager
from clavis.session_store import CookieSessionStore

ISSUER = "https://idp.example.com/realms/main"
CLIENT_ID = "clavis-app"
CLIENT_SECRET = "client-secret-value"
REDIRECT_URI = "https://app.example.com/api/auth/callback"
COOKIE_PASSWORD = "correct-horse-battery-staple-0123456789"

OIDC_PATH = "/realms/main/protocol/openid-connect"
AUTHORIZATION_ENDPOINT = f"{ISSUER}/protocol/openid-connect/auth"

USER_SUB = "user-123"
NOW_MS = 1_700_000_000_000

SETTINGS_VALUES: dict[str, Any] = {
    "client_id": CLIENT_ID,
    "client_secret": CLIENT_SECRET,
    "issuer": ISSUER,
    "redirect_uri": REDIRECT_URI,
    "cookie_password": COOKIE_PASSWORD,
}

TokenHandler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeIdP:
    """Minimal Keycloak-shaped IdP served through httpx.MockTransport."""

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str = "key-1") -> None:
        self.private_key = private_key
        self.kid = kid
        self.requests: list[httpx.Request] = []
        self.discovery_overrides: dict[str, Any] = {}
        self.discovery_status = 200
        self.jwks_status = 200
        self.token_handler: TokenHandler | None = None
        self.userinfo_claims: dict[str, Any] = {"sub": USER_SUB, "email": "ada@example.com"}
        self.refresh_token = "refresh-token-1"

    @property
    def discovery(self) -> dict[str, Any]:
        document = {
            "issuer": ISSUER,
            "authorization_endpoint": AUTHORIZATION_ENDPOINT,
            "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
            "userinfo_endpoint": f"{ISSUER}/protocol/openid-connect/userinfo",
            "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
            "end_session_endpoint": f"{ISSUER}/protocol/openid-connect/logout",
            "response_types_supported": ["code"],
            "code_challenge_methods_supported": ["S256"],
        }
        document.update(self.discovery_overrides)
        return document

    def jwks(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": self.kid, "use": "sig", "alg": "RS256"})
        return {"keys": [jwk]}

    def sign(self, claims: dict[str, Any], kid: str | None = None) -> str:
        return jwt.encode(
            claims, self.private_key, algorithm="RS256", headers={"kid": kid or self.kid}
        )

    def id_token(self, sub: str = USER_SUB, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": sub,
            "iat": now,
            "exp": now + 300,
            "email": "ada@example.com",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "name": "Ada Lovelace",
            "email_verified": True,
            "locale": "en",
        }
        claims.update(overrides)
        return self.sign(claims)

    def access_token(self, sub: str = USER_SUB) -> str:
        now = int(time.time())
        return self.sign({"iss": ISSUER, "sub": sub, "iat": now, "exp": now + 300})

    def token_success(self, **overrides: Any) -> httpx.Response:
        body: dict[str, Any] = {
            "access_token": self.access_token(),
            "token_type": "Bearer",
            "refresh_token": self.refresh_token,
            "id_token": self.id_token(),
            "expires_in": 300,
        }
        body.update(overrides)
        return httpx.Response(200, json={k: v for k, v in body.items() if v is not None})

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    @property
    def token_requests(self) -> list[dict[str, str]]:
        return [dict(parse_qsl(r.content.decode())) for r in self.requests_to("/token")]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, text="unavailable")
            return httpx.Response(200, json=self.discovery)
        if path == f"{OIDC_PATH}/certs":
            if self.jwks_status != 200:
                return httpx.Response(self.jwks_status, text="unavailable")
            return httpx.Response(200, json=self.jwks())
        if path == f"{OIDC_PATH}/token":
            if self.token_handler is not None:
                return self.token_handler(request)
            return self.token_success()
        if path == f"{OIDC_PATH}/userinfo":
            return httpx.Response(200, json=self.userinfo_claims)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture()
def idp(rsa_private_key: rsa.RSAPrivateKey) -> FakeIdP:
    return FakeIdP(rsa_private_key)


@pytest.fixture()
def settings() -> OIDCSettings:
    return OIDCSettings(**SETTINGS_VALUES)


@pytest.fixture()
def http_client(idp: FakeIdP) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=idp.transport)


@pytest.fixture()
def oidc_client(settings: OIDCSettings, http_client: httpx.AsyncClient) -> OIDCClient:
    return OIDCClient(settings, client=http_client)


@pytest.fixture()
def store(settings: OIDCSettings) -> CookieSessionStore:
    return CookieSessionStore(settings)


@pytest.fixture()
def recorded_events() -> list[AuthEvent]:
    return []


@pytest.fixture()
def event_logger(recorded_events: list[AuthEvent]) -> AuthEventLogger:
    return AuthEventLogger(sink=recorded_events.append)


@pytest.fixture()
def manager(
    oidc_client: OIDCClient,
    store: CookieSessionStore,
    event_logger: AuthEventLogger,
) -> SessionManager:
    return SessionManager(oidc_client, store, event_logger)


@pytest.fixture()
def context(
    http_client: httpx.AsyncClient, event_logger: AuthEventLogger
) -> OIDCContext:
    return OIDCContext(
        Configuration(overrides=SETTINGS_VALUES, source={}),
        http_client=http_client,
        event_logger=event_logger,
    )


def cookie_jar(cookies: Any) -> dict[str, str]:
    """Request-cookie mapping from a sequence of CookieDescriptors (deletions dropped)."""
    return {c.name: c.value for c in cookies if not c.is_deletion}
