"""Exception hierarchy for the OIDC session core.

Every error carries a machine-readable ``error_code`` and structured
``context`` so that handlers can log and translate failures consistently.

Recoverability is decided by the caller, not the exception:

- ConfigurationError, DiscoveryError, JWKSUnavailableError: fatal for the
  request, surfaced to the caller; sessions are left intact.
- TokenExchangeError, TokenRefreshError, IDTokenVerificationError: recovered
  by redirecting the browser to a fresh login.
- SealingError: treated as "no session" by the session store.
- MissingStateError, InvalidStateError: terminal for the callback request,
  surfaced as a query-encoded error on a redirect.

Example:
    >>> raise ConfigurationError("Missing required configuration value", key="issuer")
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AuthError",
    "ConfigurationError",
    "DiscoveryError",
    "IDTokenVerificationError",
    "InvalidStateError",
    "JWKSUnavailableError",
    "MissingStateError",
    "NotAuthenticatedError",
    "SealingError",
    "StateError",
    "TokenExchangeError",
    "TokenRefreshError",
]


class AuthError(Exception):
    """Base class for all authentication core errors.

    Attributes:
        error_code: Machine-readable error code for client handling.
        message: Human-readable error description.
        context: Structured debugging information. Never holds secrets.
    """

    error_code: str = "AUTH_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """String representation including context for logging."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(AuthError):
    """Raised when a required setting is missing or a setting is invalid.

    Fatal at startup or first use; must never be swallowed.

    Attributes:
        key: Configuration key the error is about, if any.
        env_name: Derived environment variable name for ``key``.

    Example:
        >>> raise ConfigurationError(
        ...     "Missing required configuration value for issuer (OIDC_ISSUER).",
        ...     key="issuer",
        ...     env_name="OIDC_ISSUER",
        ... )
    """

    error_code: str = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        key: str | None = None,
        env_name: str | None = None,
        **extra_context: Any,
    ) -> None:
        self.key = key
        self.env_name = env_name
        context: dict[str, Any] = {}
        if key is not None:
            context["key"] = key
        if env_name is not None:
            context["env_name"] = env_name
        context.update(extra_context)
        super().__init__(message, context)


class DiscoveryError(AuthError):
    """Raised when IdP metadata is unreachable or malformed.

    Wraps the underlying transport or parse failure (available as
    ``__cause__``). Not retried internally.
    """

    error_code: str = "DISCOVERY_ERROR"

    def __init__(self, issuer: str, reason: str) -> None:
        self.issuer = issuer
        self.reason = reason
        super().__init__(
            f"Failed to discover OIDC issuer at {issuer}: {reason}",
            {"issuer": issuer},
        )


class JWKSUnavailableError(DiscoveryError):
    """Raised when the IdP's signing key set cannot be fetched or parsed.

    An IdP outage, not evidence against the token being verified; callers
    must not treat it as an invalid session.
    """

    error_code: str = "JWKS_UNAVAILABLE"

    def __init__(self, jwks_uri: str, reason: str) -> None:
        self.jwks_uri = jwks_uri
        self.issuer = jwks_uri
        self.reason = reason
        AuthError.__init__(
            self,
            f"Failed to fetch signing keys from {jwks_uri}: {reason}",
            {"jwks_uri": jwks_uri},
        )


class TokenExchangeError(AuthError):
    """Raised when the IdP rejects a grant or returns an unusable response.

    Attributes:
        status_code: HTTP status from the identity provider (0 if no response).
        error: OAuth 2.0 error code (e.g., "invalid_grant").
        error_description: Human-readable error from the provider.
    """

    error_code: str = "TOKEN_EXCHANGE_ERROR"
    _label: str = "Token exchange"

    def __init__(self, status_code: int, error: str, error_description: str = "") -> None:
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        super().__init__(
            f"{self._label} failed: {error} ({status_code})",
            {"status_code": status_code, "error": error},
        )


class TokenRefreshError(TokenExchangeError):
    """Raised when the refresh-token grant fails."""

    error_code: str = "TOKEN_REFRESH_ERROR"
    _label = "Token refresh"


class IDTokenVerificationError(AuthError):
    """Raised when an ID token fails signature or claim verification."""

    error_code: str = "ID_TOKEN_INVALID"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"ID token verification failed: {reason}")


class SealingError(AuthError):
    """Raised when a sealed value is corrupt, tampered with, or expired."""

    error_code: str = "SEALING_ERROR"


class StateError(AuthError):
    """Base class for pending-state failures at the OAuth callback.

    Attributes:
        oauth_error: Value placed in the ``error`` query parameter of the
            redirect that reports this failure.
    """

    error_code: str = "STATE_ERROR"
    oauth_error: str = "invalid_state"


class MissingStateError(StateError):
    """Raised when the callback request carries no pending-state cookie."""

    error_code: str = "MISSING_STATE"
    oauth_error = "missing_state"

    def __init__(self, message: str = "No pending authorization state found") -> None:
        super().__init__(message)


class InvalidStateError(StateError):
    """Raised when the pending state cannot be unsealed or does not match."""

    error_code: str = "INVALID_STATE"
    oauth_error = "invalid_state"

    def __init__(self, message: str = "Pending authorization state is invalid") -> None:
        super().__init__(message)


class NotAuthenticatedError(AuthError):
    """Raised by request dependencies when no valid session is present.

    Maps to HTTP 401. ``authorization_url`` is included when the session
    middleware already started a login for this request.
    """

    error_code: str = "NOT_AUTHENTICATED"

    def __init__(
        self,
        message: str = "Authentication required",
        authorization_url: str | None = None,
    ) -> None:
        self.authorization_url = authorization_url
        super().__init__(message)
