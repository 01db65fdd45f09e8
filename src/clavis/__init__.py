"""Clavis -- OIDC relying-party session core for ASGI applications.

Provides the authorization-code-with-PKCE flow against an external IdP,
sealed cookie sessions with silent refresh, per-request session middleware,
audit events, and FastAPI routes and dependencies.
"""

from clavis.config import (
    Configuration,
    OIDCSettings,
    configure,
    environment_variable_name,
    get_config,
    get_configuration,
)
from clavis.context import OIDCContext, get_default_context, lifespan
from clavis.cookies import CookieDescriptor, CookiePolicy
from clavis.dependencies import CurrentAuth, SessionUser, get_current_auth, require_session
from clavis.discovery import DiscoveryCache, fetch_discovery_document
from clavis.error_handlers import register_exception_handlers
from clavis.events import AuthEvent, AuthEventLogger, AuthEventType
from clavis.exceptions import (
    AuthError,
    ConfigurationError,
    DiscoveryError,
    IDTokenVerificationError,
    InvalidStateError,
    JWKSUnavailableError,
    MissingStateError,
    NotAuthenticatedError,
    SealingError,
    StateError,
    TokenExchangeError,
    TokenRefreshError,
)
from clavis.handlers import RedirectResult, begin_login, handle_callback
from clavis.jwks import JWKSProvider
from clavis.middleware.session import OIDCSessionMiddleware
from clavis.models import (
    AuthInfo,
    AuthorizationOptions,
    AuthorizationRequest,
    DiscoveryDocument,
    NoUserInfo,
    OIDCUser,
    PendingAuthState,
    Session,
    TokenSet,
    UserInfo,
)
from clavis.oidc_client import OIDCClient
from clavis.pkce import derive_code_challenge, generate_code_verifier, generate_state
from clavis.routes import create_auth_router
from clavis.sealing import Sealer, seal, unseal
from clavis.session import AuthResult, SessionManager, SessionState, SignOutResult
from clavis.session_store import CookieSessionStore

__all__ = [
    "AuthError",
    "AuthEvent",
    "AuthEventLogger",
    "AuthEventType",
    "AuthInfo",
    "AuthResult",
    "AuthorizationOptions",
    "AuthorizationRequest",
    "Configuration",
    "ConfigurationError",
    "CookieDescriptor",
    "CookiePolicy",
    "CookieSessionStore",
    "CurrentAuth",
    "DiscoveryCache",
    "DiscoveryDocument",
    "DiscoveryError",
    "IDTokenVerificationError",
    "InvalidStateError",
    "JWKSProvider",
    "JWKSUnavailableError",
    "MissingStateError",
    "NoUserInfo",
    "NotAuthenticatedError",
    "OIDCClient",
    "OIDCContext",
    "OIDCSessionMiddleware",
    "OIDCSettings",
    "OIDCUser",
    "PendingAuthState",
    "RedirectResult",
    "SealingError",
    "Sealer",
    "Session",
    "SessionManager",
    "SessionState",
    "SessionUser",
    "SignOutResult",
    "StateError",
    "TokenExchangeError",
    "TokenRefreshError",
    "TokenSet",
    "UserInfo",
    "begin_login",
    "configure",
    "create_auth_router",
    "derive_code_challenge",
    "environment_variable_name",
    "fetch_discovery_document",
    "generate_code_verifier",
    "generate_state",
    "get_config",
    "get_configuration",
    "get_current_auth",
    "get_default_context",
    "handle_callback",
    "lifespan",
    "register_exception_handlers",
    "require_session",
    "seal",
    "unseal",
]
