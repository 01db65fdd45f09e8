"""OIDC configuration resolution.

Values are resolved per key, in order:

1. the active value source, queried with the environment-style name
   ``OIDC_<UPPER_SNAKE_CASE>`` (``os.environ`` by default);
2. values supplied programmatically through :meth:`Configuration.configure`;
3. built-in defaults;
4. otherwise, for required keys, a :class:`ConfigurationError` naming both
   the key and its environment name.

Environment Variables:
    OIDC_CLIENT_ID: OAuth application client_id (required)
    OIDC_CLIENT_SECRET: OAuth application client_secret (required)
    OIDC_ISSUER: IdP base URL, e.g. https://kc.example.com/realms/main (required)
    OIDC_REDIRECT_URI: Callback URL registered with the IdP (required)
    OIDC_COOKIE_PASSWORD: Cookie sealing password, >= 32 chars (required)
    OIDC_COOKIE_NAME: Session cookie name (default "oidc-session")
    OIDC_COOKIE_MAX_AGE: Session cookie max-age in seconds (default 400 days)
    OIDC_COOKIE_DOMAIN: Optional cookie Domain attribute
    OIDC_SCOPE: Requested scopes (default "openid profile email")

Example:
    >>> configuration = Configuration(source={"OIDC_ISSUER": "https://idp.example.com"})
    >>> configuration.get_value("issuer")
    'https://idp.example.com'
"""

from __future__ import annotations

import os
import re
import threading
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any, Literal
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clavis.exceptions import ConfigurationError

ValueSource = Mapping[str, Any] | Callable[[str], Any]

MIN_COOKIE_PASSWORD_LENGTH = 32

# Chrome caps cookie lifetime at 400 days. The access/refresh tokens are the
# time-limited part of the session, not the cookie.
DEFAULT_COOKIE_MAX_AGE = 60 * 60 * 24 * 400

REQUIRED_KEYS: frozenset[str] = frozenset(
    {"client_id", "client_secret", "issuer", "redirect_uri", "cookie_password"}
)

DEFAULTS: dict[str, Any] = {
    "cookie_name": "oidc-session",
    "access_token_cookie_name": "oidc-access-token",
    "state_cookie_name": "oidc-state",
    "cookie_max_age": DEFAULT_COOKIE_MAX_AGE,
    "cookie_same_site": "lax",
    "scope": "openid profile email",
    "http_timeout": 10.0,
    "error_redirect_path": "/",
}

_INT_KEYS = frozenset({"cookie_max_age"})
_FLOAT_KEYS = frozenset({"http_timeout"})
_MAPPING_KEYS = frozenset({"additional_params"})

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


class OIDCSettings(BaseModel):
    """Validated, immutable snapshot of the resolved configuration."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1, repr=False)
    issuer: str = Field(min_length=1)
    redirect_uri: str
    cookie_password: str = Field(repr=False)
    cookie_name: str = Field(default=DEFAULTS["cookie_name"], min_length=1)
    access_token_cookie_name: str = Field(
        default=DEFAULTS["access_token_cookie_name"], min_length=1
    )
    state_cookie_name: str = Field(default=DEFAULTS["state_cookie_name"], min_length=1)
    cookie_max_age: int = Field(default=DEFAULT_COOKIE_MAX_AGE, ge=0)
    cookie_domain: str | None = None
    cookie_same_site: Literal["lax", "strict", "none"] = "lax"
    scope: str = DEFAULTS["scope"]
    additional_params: dict[str, str] = Field(default_factory=dict)
    http_timeout: float = Field(default=DEFAULTS["http_timeout"], gt=0)
    error_redirect_path: str = DEFAULTS["error_redirect_path"]

    @field_validator("issuer")
    @classmethod
    def _strip_issuer(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("redirect_uri")
    @classmethod
    def _validate_redirect_uri(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("redirect_uri must be a valid HTTP(S) URL")
        return v

    @field_validator("cookie_password")
    @classmethod
    def _validate_cookie_password(cls, v: str) -> str:
        if len(v) < MIN_COOKIE_PASSWORD_LENGTH:
            raise ValueError(
                f"cookie_password must be at least {MIN_COOKIE_PASSWORD_LENGTH} characters long"
            )
        return v

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _normalize_same_site(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def secure_cookies(self) -> bool:
        """Cookies carry ``Secure`` whenever the callback is served over HTTPS."""
        return self.redirect_uri.startswith("https:")


def _to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()


def environment_variable_name(key: str) -> str:
    """Derive the environment-style name for a configuration key.

    Example:
        >>> environment_variable_name("cookiePassword")
        'OIDC_COOKIE_PASSWORD'
        >>> environment_variable_name("cookie_max_age")
        'OIDC_COOKIE_MAX_AGE'
    """
    return f"OIDC_{_to_snake(key).upper()}"


def _parse_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 10)
    except ValueError:
        return None


def _parse_float(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _parse_mapping(value: Any) -> dict[str, str] | None:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, str):
        return dict(parse_qsl(value, keep_blank_values=True))
    return None


def _coerce(key: str, value: Any) -> Any:
    """Coerce a raw source value; ``None`` means "fall through"."""
    if key in _INT_KEYS:
        return _parse_int(value)
    if key in _FLOAT_KEYS:
        return _parse_float(value)
    if key in _MAPPING_KEYS:
        return _parse_mapping(value)
    return value


class Configuration:
    """Resolver for OIDC settings with a swappable value source.

    Thread-safe: ``configure`` and ``settings`` serialise on an internal lock,
    and the validated :class:`OIDCSettings` snapshot is cached until the next
    ``configure`` call.

    Args:
        overrides: Programmatic values (snake_case or camelCase keys).
        source: Mapping or ``key -> value`` callable queried with
            ``OIDC_*`` names. Defaults to ``os.environ``.
    """

    def __init__(
        self,
        overrides: Mapping[str, Any] | None = None,
        source: ValueSource | None = None,
    ) -> None:
        self._config: dict[str, Any] = {}
        self._source: ValueSource = source if source is not None else os.environ
        self._lock = threading.Lock()
        self._settings: OIDCSettings | None = None
        if overrides:
            self.configure(overrides)

    def configure(
        self,
        overrides: Mapping[str, Any] | None = None,
        source: ValueSource | None = None,
    ) -> None:
        """Merge programmatic values and/or swap the value source.

        Raises:
            ConfigurationError: On an unknown key, or if the merged
                ``cookie_password`` is shorter than 32 characters.
        """
        with self._lock:
            merged = dict(self._config)
            for raw_key, value in (overrides or {}).items():
                key = _to_snake(raw_key)
                if key not in OIDCSettings.model_fields:
                    raise ConfigurationError(
                        f"Unknown configuration key: {raw_key}", key=raw_key
                    )
                merged[key] = value

            password = merged.get("cookie_password")
            if password is not None and len(str(password)) < MIN_COOKIE_PASSWORD_LENGTH:
                raise ConfigurationError(
                    f"cookie_password must be at least {MIN_COOKIE_PASSWORD_LENGTH} "
                    "characters long",
                    key="cookie_password",
                    env_name=environment_variable_name("cookie_password"),
                )

            self._config = merged
            if source is not None:
                self._source = source
            self._settings = None

    def _lookup(self, env_name: str) -> Any:
        source = self._source
        if callable(source):
            return source(env_name)
        return source.get(env_name)

    def get_value(self, key: str) -> Any:
        """Resolve a single configuration value.

        Args:
            key: Configuration key, snake_case or camelCase.

        Returns:
            The resolved value, or ``None`` for an unset optional key.

        Raises:
            ConfigurationError: If ``key`` is required and unresolved.
        """
        key = _to_snake(key)
        env_name = environment_variable_name(key)

        value = self._lookup(env_name)
        if value is not None:
            value = _coerce(key, value)
        if value is None:
            value = self._config.get(key)
            if value is not None:
                value = _coerce(key, value)
        if value is None:
            value = DEFAULTS.get(key)

        if value is None and key in REQUIRED_KEYS:
            raise ConfigurationError(
                f"Missing required configuration value for {key} ({env_name}).",
                key=key,
                env_name=env_name,
            )
        return value

    def settings(self) -> OIDCSettings:
        """Resolve every key into a validated settings snapshot.

        Raises:
            ConfigurationError: If a required key is missing or any value
                fails validation.
        """
        with self._lock:
            if self._settings is not None:
                return self._settings

            values: dict[str, Any] = {}
            for key in OIDCSettings.model_fields:
                value = self.get_value(key)
                if value is not None:
                    values[key] = value

            try:
                self._settings = OIDCSettings(**values)
            except ValidationError as exc:
                first = exc.errors()[0]
                key = str(first["loc"][0]) if first.get("loc") else None
                raise ConfigurationError(
                    f"Invalid OIDC configuration: {first['msg']}",
                    key=key,
                    env_name=environment_variable_name(key) if key else None,
                ) from exc
            return self._settings


@lru_cache(maxsize=1)
def get_configuration() -> Configuration:
    """Get the process-default Configuration.

    Clear with ``get_configuration.cache_clear()`` for testing.
    """
    return Configuration()


def configure(
    overrides: Mapping[str, Any] | None = None,
    source: ValueSource | None = None,
) -> None:
    """Configure the process-default Configuration.

    Example:
        >>> configure({"clientId": "app", "cookiePassword": "x" * 32})
        >>> configure(source=lambda name: vault.read(name))
    """
    get_configuration().configure(overrides, source)


def get_config(key: str) -> Any:
    """Resolve one key from the process-default Configuration."""
    return get_configuration().get_value(key)
