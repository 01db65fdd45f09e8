"""Tests for the per-request session state machine and sign-out."""

from __future__ import annotations

import time
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from conftest import AUTHORIZATION_ENDPOINT, ISSUER, USER_SUB, FakeIdP, cookie_jar

from clavis.events import AuthEvent, AuthEventType
from clavis.exceptions import DiscoveryError, JWKSUnavailableError
from clavis.models import AuthorizationOptions, NoUserInfo, OIDCUser, Session, UserInfo
from clavis.session import (
    MIDDLEWARE_HEADER,
    URL_HEADER,
    SessionManager,
    SessionState,
    epoch_ms,
    return_pathname,
    safe_return_path,
    session_id_for,
)
from clavis.session_store import CookieSessionStore

REQUEST_URL = "https://app.example.com/dashboard?tab=1"


def _session(idp: FakeIdP, **overrides: Any) -> Session:
    values: dict[str, Any] = {
        "user": OIDCUser.from_claims({"sub": USER_SUB, "email": "ada@example.com"}),
        "access_token": idp.access_token(),
        "refresh_token": "refresh-token-0",
        "id_token": idp.id_token(),
        "expires_at": epoch_ms() + 300_000,
    }
    values.update(overrides)
    return Session(**values)


def _jar(store: CookieSessionStore, session: Session) -> dict[str, str]:
    return cookie_jar(store.save(session))


def _types(events: list[AuthEvent]) -> list[AuthEventType]:
    return [event.type for event in events]


@pytest.mark.unit
class TestNoSession:
    @pytest.mark.asyncio
    async def test_starts_authorization(
        self, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        result = await manager.update_session(REQUEST_URL, {})

        assert result.state is SessionState.NO_SESSION
        assert isinstance(result.auth, NoUserInfo)
        assert not result.is_authenticated
        assert result.authorization_url is not None
        assert result.authorization_url.startswith(AUTHORIZATION_ENDPOINT)

        (pending_cookie,) = result.cookies
        assert pending_cookie.name == "oidc-state"
        assert pending_cookie.max_age == 600
        pending = store.load_pending({pending_cookie.name: pending_cookie.value})
        assert pending.return_to == "/dashboard?tab=1"
        query = parse_qs(urlsplit(result.authorization_url).query)
        assert query["state"] == [pending.state]

    @pytest.mark.asyncio
    async def test_marker_headers(self, manager: SessionManager) -> None:
        result = await manager.update_session(REQUEST_URL, {})
        assert result.headers == {MIDDLEWARE_HEADER: "true", URL_HEADER: REQUEST_URL}

    @pytest.mark.asyncio
    async def test_explicit_return_pathname(
        self, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        result = await manager.update_session(
            REQUEST_URL, {}, AuthorizationOptions(return_pathname="/settings")
        )
        pending_cookie = result.cookies[-1]
        pending = store.load_pending({pending_cookie.name: pending_cookie.value})
        assert pending.return_to == "/settings"

    @pytest.mark.asyncio
    async def test_unreadable_cookie_is_no_session(self, manager: SessionManager) -> None:
        cookies = {"oidc-session": "garbage", "oidc-access-token": "token"}
        result = await manager.update_session(REQUEST_URL, cookies)
        assert result.state is SessionState.NO_SESSION

    @pytest.mark.asyncio
    async def test_discovery_failure_propagates(
        self, idp: FakeIdP, manager: SessionManager
    ) -> None:
        idp.discovery_status = 500
        with pytest.raises(DiscoveryError):
            await manager.update_session(REQUEST_URL, {})


@pytest.mark.unit
class TestValidSession:
    @pytest.mark.asyncio
    async def test_exposes_identity(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        session = _session(idp)
        result = await manager.update_session(REQUEST_URL, _jar(store, session))

        assert result.state is SessionState.VALID_SESSION
        assert isinstance(result.auth, UserInfo)
        assert result.auth.user.id == USER_SUB
        assert result.auth.session_id == USER_SUB
        assert result.auth.access_token == session.access_token
        assert result.auth.id_token == session.id_token
        assert result.authorization_url is None
        assert result.cookies == ()
        assert result.session == session
        assert idp.token_requests == []

    @pytest.mark.asyncio
    async def test_id_token_expiry_does_not_end_session(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        now = int(time.time())
        session = _session(idp, id_token=idp.id_token(iat=now - 7200, exp=now - 3600))
        result = await manager.update_session(REQUEST_URL, _jar(store, session))
        assert result.state is SessionState.VALID_SESSION

    @pytest.mark.asyncio
    async def test_session_without_id_token(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        session = _session(idp, id_token=None)
        result = await manager.update_session(REQUEST_URL, _jar(store, session))
        assert result.state is SessionState.VALID_SESSION
        assert idp.requests_to("/certs") == []

    @pytest.mark.asyncio
    async def test_verify_session(
        self, idp: FakeIdP, manager: SessionManager
    ) -> None:
        assert await manager.verify_session(_session(idp))
        assert not await manager.verify_session(_session(idp, expires_at=epoch_ms() - 1))

    @pytest.mark.asyncio
    async def test_signing_key_outage_keeps_session(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        idp.jwks_status = 502
        jar = _jar(store, _session(idp, expires_at=epoch_ms() + 600_000))

        with pytest.raises(JWKSUnavailableError):
            await manager.update_session(REQUEST_URL, jar)

        assert idp.token_requests == []
        assert recorded_events == []
        idp.jwks_status = 200
        result = await manager.update_session(REQUEST_URL, jar)
        assert result.state is SessionState.VALID_SESSION


@pytest.mark.unit
class TestExpiredSession:
    @pytest.mark.asyncio
    async def test_refreshes_and_reissues_cookies(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        idp.refresh_token = "refresh-token-1"
        session = _session(idp, expires_at=epoch_ms() - 1000)
        result = await manager.update_session(REQUEST_URL, _jar(store, session))

        assert result.state is SessionState.VALID_SESSION
        assert result.authorization_url is None
        assert [c.name for c in result.cookies] == ["oidc-session", "oidc-access-token"]
        refreshed = store.load(cookie_jar(result.cookies))
        assert refreshed is not None
        assert refreshed.refresh_token == "refresh-token-1"
        assert refreshed.expires_at is not None and refreshed.expires_at > epoch_ms()
        assert idp.token_requests[0]["refresh_token"] == "refresh-token-0"
        assert _types(recorded_events) == [AuthEventType.TOKEN_REFRESH]

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_and_restarts(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        idp.token_handler = lambda request: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token is not active"}
        )
        session = _session(idp, expires_at=epoch_ms() - 1000)
        result = await manager.update_session(REQUEST_URL, _jar(store, session))

        assert result.state is SessionState.EXPIRED_OR_INVALID
        assert isinstance(result.auth, NoUserInfo)
        assert result.authorization_url is not None
        names = [c.name for c in result.cookies]
        assert names == ["oidc-session", "oidc-access-token", "oidc-state"]
        assert result.cookies[0].is_deletion and result.cookies[1].is_deletion
        assert not result.cookies[2].is_deletion
        assert _types(recorded_events) == [AuthEventType.SESSION_EXPIRED]
        assert recorded_events[0].user_id == USER_SUB

    @pytest.mark.asyncio
    async def test_signing_key_outage_during_refresh_is_not_expiry(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        idp.jwks_status = 503
        session = _session(idp, expires_at=epoch_ms() - 1000)
        with pytest.raises(DiscoveryError):
            await manager.update_session(REQUEST_URL, _jar(store, session))
        assert recorded_events == []

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        session = _session(idp, refresh_token=None, expires_at=epoch_ms() - 1000)
        result = await manager.update_session(REQUEST_URL, _jar(store, session))
        assert result.state is SessionState.EXPIRED_OR_INVALID
        assert idp.token_requests == []

    @pytest.mark.asyncio
    async def test_foreign_id_token_is_invalid(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        session = _session(idp, refresh_token=None, id_token=idp.id_token(aud="other-client"))
        result = await manager.update_session(REQUEST_URL, _jar(store, session))
        assert result.state is SessionState.EXPIRED_OR_INVALID

    @pytest.mark.asyncio
    async def test_subject_mismatch_is_invalid(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        session = _session(idp, refresh_token=None, id_token=idp.id_token(sub="someone-else"))
        result = await manager.update_session(REQUEST_URL, _jar(store, session))
        assert result.state is SessionState.EXPIRED_OR_INVALID
        assert recorded_events[0].error == "ID token subject does not match the session user"


@pytest.mark.unit
class TestGetAuth:
    def test_from_cookies_without_network(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        auth = manager.get_auth(_jar(store, _session(idp)))
        assert isinstance(auth, UserInfo)
        assert auth.user.email == "ada@example.com"
        assert idp.requests == []

    def test_anonymous(self, manager: SessionManager) -> None:
        assert manager.get_auth({}).to_dict() == {"user": None}


@pytest.mark.unit
class TestSignOut:
    @pytest.mark.asyncio
    async def test_clears_all_cookies(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        result = await manager.sign_out(_jar(store, _session(idp)))

        assert result.redirect_url == "/"
        assert [c.name for c in result.cookies] == [
            "oidc-session",
            "oidc-access-token",
            "oidc-state",
        ]
        assert all(c.is_deletion for c in result.cookies)
        assert _types(recorded_events) == [AuthEventType.LOGOUT]
        assert recorded_events[0].user_id == USER_SUB

    @pytest.mark.asyncio
    async def test_without_session(self, manager: SessionManager) -> None:
        result = await manager.sign_out(return_to="/bye")
        assert result.redirect_url == "/bye"
        assert len(result.cookies) == 3

    @pytest.mark.asyncio
    async def test_offsite_return_to_ignored(self, manager: SessionManager) -> None:
        result = await manager.sign_out(return_to="https://evil.example.com/")
        assert result.redirect_url == "/"

    @pytest.mark.asyncio
    async def test_end_session_redirects_to_idp(
        self, idp: FakeIdP, manager: SessionManager, store: CookieSessionStore
    ) -> None:
        session = _session(idp)
        result = await manager.sign_out(
            _jar(store, session), return_to="/goodbye", end_session=True
        )

        assert result.redirect_url.startswith(f"{ISSUER}/protocol/openid-connect/logout?")
        query = parse_qs(urlsplit(result.redirect_url).query)
        assert query["id_token_hint"] == [session.id_token]
        assert query["post_logout_redirect_uri"] == ["https://app.example.com/goodbye"]

    @pytest.mark.asyncio
    async def test_end_session_without_endpoint_falls_back(
        self, idp: FakeIdP, manager: SessionManager
    ) -> None:
        idp.discovery_overrides = {"end_session_endpoint": None}
        result = await manager.sign_out(return_to="/goodbye", end_session=True)
        assert result.redirect_url == "/goodbye"

    @pytest.mark.asyncio
    async def test_end_session_with_idp_down_still_signs_out(
        self,
        idp: FakeIdP,
        manager: SessionManager,
        store: CookieSessionStore,
        recorded_events: list[AuthEvent],
    ) -> None:
        idp.discovery_status = 503
        result = await manager.sign_out(
            _jar(store, _session(idp)), return_to="/goodbye", end_session=True
        )

        assert result.redirect_url == "/goodbye"
        assert [c.name for c in result.cookies] == [
            "oidc-session",
            "oidc-access-token",
            "oidc-state",
        ]
        assert all(c.is_deletion for c in result.cookies)
        assert _types(recorded_events) == [AuthEventType.LOGOUT]


@pytest.mark.unit
class TestHelpers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("/reports?year=2024", "/reports?year=2024"),
            ("/", "/"),
            (None, "/"),
            ("", "/"),
            ("reports", "/"),
            ("https://evil.example.com/", "/"),
            ("//evil.example.com/", "/"),
            ("/\\evil.example.com", "/"),
            ("/a\r\nSet-Cookie: x=y", "/"),
        ],
    )
    def test_safe_return_path(self, value: str | None, expected: str) -> None:
        assert safe_return_path(value) == expected

    def test_return_pathname(self) -> None:
        assert return_pathname(REQUEST_URL) == "/dashboard?tab=1"
        assert return_pathname("https://app.example.com") == "/"

    def test_session_id_from_access_token_sub(self, idp: FakeIdP) -> None:
        session = _session(idp, access_token=idp.access_token(sub="token-subject"))
        assert session_id_for(session) == "token-subject"

    def test_session_id_falls_back_for_opaque_token(self, idp: FakeIdP) -> None:
        assert session_id_for(_session(idp, access_token="opaque")) == USER_SUB
