"""Data model for the OIDC relying-party session core.

Session-shaped records are pydantic models with camelCase aliases, so the
payloads sealed into cookies keep the same wire shape regardless of the
Python attribute names. Pure value objects that never cross the wire are
frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "AuthInfo",
    "AuthorizationOptions",
    "AuthorizationRequest",
    "CodeExchangeResult",
    "DiscoveryDocument",
    "NoUserInfo",
    "OIDCUser",
    "PendingAuthState",
    "ScreenHint",
    "Session",
    "TokenSet",
    "UserInfo",
]

ScreenHint = Literal["sign-up", "sign-in"]

# Standard OIDC claim -> OIDCUser field
_CLAIM_FIELDS: dict[str, str] = {
    "sub": "id",
    "email": "email",
    "given_name": "first_name",
    "family_name": "last_name",
    "name": "display_name",
    "preferred_username": "preferred_username",
    "picture": "picture_url",
    "email_verified": "email_verified",
}


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to the JSON-compatible camelCase wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OIDCUser(_WireModel):
    """Identity claims of the authenticated user.

    Well-known claims are mapped to named fields; every other claim the IdP
    returned is preserved in ``claims``.
    """

    id: str
    email: str = ""
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    preferred_username: str | None = None
    picture_url: str | None = None
    email_verified: bool | None = None
    claims: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> OIDCUser:
        """Map ID-token or userinfo claims onto an identity record.

        Args:
            claims: Decoded claims dict.

        Returns:
            OIDCUser with mapped fields and remaining claims in ``claims``.
        """
        mapped: dict[str, Any] = {"id": "", "email": ""}
        extra: dict[str, Any] = {}
        for name, value in claims.items():
            field_name = _CLAIM_FIELDS.get(name)
            if field_name is None:
                extra[name] = value
            elif value is not None:
                mapped[field_name] = str(value) if field_name == "id" else value
        return cls(**mapped, claims=extra)


class Session(_WireModel):
    """Authenticated-identity record reconstructed from cookies per request.

    A session always carries a non-empty access token; "no session" is
    represented by the absence of a Session, never by an empty one.
    """

    user: OIDCUser
    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: int | None = None  # epoch milliseconds

    @field_validator("access_token")
    @classmethod
    def _require_access_token(cls, v: str) -> str:
        if not v:
            raise ValueError("Session requires a non-empty access token")
        return v

    def is_expired(self, now_ms: int) -> bool:
        """Whether the access token lifetime reported by the IdP has elapsed."""
        return self.expires_at is not None and self.expires_at <= now_ms


class PendingAuthState(_WireModel):
    """CSRF/PKCE correlation record between login initiation and callback."""

    code_verifier: str
    state: str
    return_to: str = "/"


class TokenSet(BaseModel):
    """Parsed response from the IdP token endpoint."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> TokenSet:
        """Build from a token endpoint JSON body.

        ``expires_in`` may be an integer, a float or a numeric string.

        Raises:
            ValueError: If ``access_token`` is missing or empty, or
                ``expires_in`` is not numeric.
        """
        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response missing access_token")
        raw_expires_in = body.get("expires_in")
        try:
            expires_in = int(float(raw_expires_in)) if raw_expires_in is not None else None
        except (TypeError, OverflowError) as exc:
            raise ValueError(f"Token response has invalid expires_in: {raw_expires_in!r}") from exc
        return cls(
            access_token=access_token,
            token_type=str(body.get("token_type") or "Bearer"),
            refresh_token=body.get("refresh_token") or None,
            id_token=body.get("id_token") or None,
            expires_in=expires_in,
            scope=body.get("scope"),
        )

    def expires_at_ms(self, now_ms: int) -> int | None:
        """Absolute expiry in epoch milliseconds, if the IdP gave a lifetime."""
        if self.expires_in is None:
            return None
        return now_ms + self.expires_in * 1000


class DiscoveryDocument(BaseModel):
    """IdP metadata from ``/.well-known/openid-configuration``."""

    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = Field(default_factory=list)
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None


class UserInfo(BaseModel):
    """Authenticated view of the current request's session."""

    model_config = ConfigDict(frozen=True)

    user: OIDCUser
    session_id: str
    access_token: str
    id_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": self.user.to_wire(),
            "sessionId": self.session_id,
            "accessToken": self.access_token,
            "idToken": self.id_token,
        }


class NoUserInfo(BaseModel):
    """Anonymous view: no user and no tokens."""

    model_config = ConfigDict(frozen=True)

    user: None = None

    def to_dict(self) -> dict[str, Any]:
        return {"user": None}


AuthInfo = UserInfo | NoUserInfo


@dataclass(frozen=True, slots=True)
class AuthorizationOptions:
    """Per-call options for building an authorization URL.

    Attributes:
        redirect_uri: Override for the configured callback URL.
        screen_hint: Ask the IdP to show the sign-up or sign-in screen.
        return_pathname: Path + query to land on after login.
        scope: Override for the configured scope.
        prompt: OIDC ``prompt`` parameter (e.g. "login", "consent").
    """

    redirect_uri: str | None = None
    screen_hint: ScreenHint | None = None
    return_pathname: str | None = None
    scope: str | None = None
    prompt: str | None = None


@dataclass(frozen=True, slots=True)
class AuthorizationRequest:
    """Authorization URL plus the secrets that must survive until callback."""

    url: str
    code_verifier: str
    state: str


@dataclass(frozen=True, slots=True)
class CodeExchangeResult:
    user: OIDCUser
    tokens: TokenSet
