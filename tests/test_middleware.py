"""Integration tests for the session middleware and request dependencies."""

from __future__ import annotations

from collections.abc import Iterator

import httpx
import pytest
from conftest import AUTHORIZATION_ENDPOINT, USER_SUB, FakeIdP, cookie_jar
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clavis.context import OIDCContext
from clavis.dependencies import CurrentAuth, SessionUser
from clavis.error_handlers import PROBLEM_MEDIA_TYPE, register_exception_handlers
from clavis.middleware.session import OIDCSessionMiddleware
from clavis.models import OIDCUser, Session
from clavis.session import MIDDLEWARE_HEADER, URL_HEADER, epoch_ms

BASE_URL = "https://testserver"


def _make_app(context: OIDCContext) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.add_middleware(
        OIDCSessionMiddleware, context=context, protected_prefixes=("/dashboard",)
    )

    @app.get("/")
    async def home(auth: CurrentAuth) -> dict:
        return auth.to_dict()

    @app.get("/dashboard")
    async def dashboard(user: SessionUser) -> dict:
        return {"id": user.user.id, "session_id": user.session_id}

    @app.get("/account")
    async def account(user: SessionUser) -> dict:
        return {"id": user.user.id}

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


@pytest.fixture()
def client(context: OIDCContext) -> Iterator[TestClient]:
    with TestClient(_make_app(context), base_url=BASE_URL, follow_redirects=False) as c:
        yield c


def _cookie_header(context: OIDCContext, idp: FakeIdP, **overrides: object) -> str:
    values: dict[str, object] = {
        "user": OIDCUser.from_claims({"sub": USER_SUB, "email": "ada@example.com"}),
        "access_token": idp.access_token(),
        "refresh_token": "refresh-token-0",
        "id_token": idp.id_token(),
        "expires_at": epoch_ms() + 300_000,
    }
    values.update(overrides)
    jar = cookie_jar(context.store.save(Session(**values)))
    return "; ".join(f"{name}={value}" for name, value in jar.items())


def _set_cookie_names(response: httpx.Response) -> list[str]:
    return [h.split("=", 1)[0] for h in response.headers.get_list("set-cookie")]


class TestAnonymous:
    @pytest.mark.integration
    def test_unprotected_path_runs_anonymously(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {"user": None}
        assert response.headers[MIDDLEWARE_HEADER] == "true"
        assert response.headers[URL_HEADER] == f"{BASE_URL}/"
        assert _set_cookie_names(response) == ["oidc-state"]

    @pytest.mark.integration
    def test_protected_path_redirects_to_idp(self, client: TestClient) -> None:
        response = client.get("/dashboard?tab=1")

        assert response.status_code == 302
        assert response.headers["location"].startswith(AUTHORIZATION_ENDPOINT)
        assert _set_cookie_names(response) == ["oidc-state"]
        assert "Max-Age=600" in response.headers["set-cookie"]

    @pytest.mark.integration
    def test_session_dependency_rejects_with_401(self, client: TestClient) -> None:
        response = client.get("/account")

        assert response.status_code == 401
        assert response.headers["content-type"] == PROBLEM_MEDIA_TYPE
        body = response.json()
        assert body["context"]["authorization_url"].startswith(AUTHORIZATION_ENDPOINT)

    @pytest.mark.integration
    def test_excluded_path_is_untouched(self, idp: FakeIdP, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert MIDDLEWARE_HEADER not in response.headers
        assert "set-cookie" not in response.headers
        assert idp.requests == []


class TestAuthenticated:
    @pytest.mark.integration
    def test_valid_session(
        self, idp: FakeIdP, context: OIDCContext, client: TestClient
    ) -> None:
        response = client.get("/dashboard", headers={"cookie": _cookie_header(context, idp)})

        assert response.status_code == 200
        assert response.json() == {"id": USER_SUB, "session_id": USER_SUB}
        assert "set-cookie" not in response.headers
        assert response.headers[MIDDLEWARE_HEADER] == "true"

    @pytest.mark.integration
    def test_expired_session_refreshed_transparently(
        self, idp: FakeIdP, context: OIDCContext, client: TestClient
    ) -> None:
        cookie = _cookie_header(context, idp, expires_at=epoch_ms() - 1000)
        response = client.get("/dashboard", headers={"cookie": cookie})

        assert response.status_code == 200
        assert _set_cookie_names(response) == ["oidc-session", "oidc-access-token"]
        assert idp.token_requests[0]["grant_type"] == "refresh_token"

    @pytest.mark.integration
    def test_failed_refresh_redirects_and_clears(
        self, idp: FakeIdP, context: OIDCContext, client: TestClient
    ) -> None:
        idp.token_handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        cookie = _cookie_header(context, idp, expires_at=epoch_ms() - 1000)
        response = client.get("/dashboard", headers={"cookie": cookie})

        assert response.status_code == 302
        assert response.headers["location"].startswith(AUTHORIZATION_ENDPOINT)
        assert _set_cookie_names(response) == ["oidc-session", "oidc-access-token", "oidc-state"]


class TestFailures:
    @pytest.mark.integration
    def test_discovery_outage_is_503(self, idp: FakeIdP, client: TestClient) -> None:
        idp.discovery_status = 500
        response = client.get("/")

        assert response.status_code == 503
        assert response.headers["content-type"] == PROBLEM_MEDIA_TYPE
        assert response.json()["error_code"] == "DISCOVERY_ERROR"

    @pytest.mark.integration
    def test_signing_key_outage_is_503_and_keeps_cookies(
        self, idp: FakeIdP, context: OIDCContext, client: TestClient
    ) -> None:
        idp.jwks_status = 502
        response = client.get("/dashboard", headers={"cookie": _cookie_header(context, idp)})

        assert response.status_code == 503
        assert response.json()["error_code"] == "JWKS_UNAVAILABLE"
        assert "set-cookie" not in response.headers
