"""Cookie-backed session persistence.

Split layout: the session cookie holds the sealed
``{user, expiresAt, refreshToken, idToken}`` payload and a separate
``HttpOnly`` cookie carries the raw access token. A session is only
reconstructed when both cookies are present and the sealed half unseals.

The short-lived pending-authorization state rides the same transport in its
own sealed cookie.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace

from pydantic import ValidationError

from clavis.config import OIDCSettings
from clavis.cookies import CookieDescriptor, CookiePolicy
from clavis.exceptions import InvalidStateError, MissingStateError, SealingError
from clavis.models import OIDCUser, PendingAuthState, Session
from clavis.sealing import Sealer

logger = logging.getLogger(__name__)

PENDING_STATE_MAX_AGE = 600


class CookieSessionStore:
    """Seals sessions into cookies and reads them back.

    Args:
        settings: Resolved OIDC settings (cookie names, password, policy).
    """

    def __init__(self, settings: OIDCSettings) -> None:
        self._sealer = Sealer(settings.cookie_password)
        self._policy = CookiePolicy.from_settings(settings)
        self._session_cookie = settings.cookie_name
        self._access_token_cookie = settings.access_token_cookie_name
        self._state_cookie = settings.state_cookie_name

    @property
    def policy(self) -> CookiePolicy:
        return self._policy

    @property
    def cookie_names(self) -> tuple[str, str, str]:
        """Session, access-token and pending-state cookie names."""
        return self._session_cookie, self._access_token_cookie, self._state_cookie

    def save(self, session: Session) -> list[CookieDescriptor]:
        """Describe the cookies that persist ``session``."""
        payload = session.to_wire()
        access_token = payload.pop("accessToken")
        return [
            self._policy.cookie(self._session_cookie, self._sealer.seal(payload)),
            self._policy.cookie(self._access_token_cookie, access_token),
        ]

    def load(self, cookies: Mapping[str, str]) -> Session | None:
        """Reconstruct the session from request cookies.

        Returns:
            The session, or ``None`` if either cookie is missing or the
            sealed payload is unreadable. Never raises for bad cookie data.
        """
        sealed = cookies.get(self._session_cookie)
        access_token = cookies.get(self._access_token_cookie)
        if not sealed or not access_token:
            return None

        try:
            payload = self._sealer.unseal(sealed)
        except SealingError as exc:
            logger.info("session_cookie_unreadable", extra={"reason": exc.message})
            return None
        if not isinstance(payload, dict):
            logger.info("session_cookie_unreadable", extra={"reason": "payload is not an object"})
            return None

        try:
            return Session(
                user=OIDCUser.model_validate(payload.get("user")),
                access_token=access_token,
                refresh_token=payload.get("refreshToken"),
                id_token=payload.get("idToken"),
                expires_at=payload.get("expiresAt"),
            )
        except ValidationError:
            logger.info("session_cookie_unreadable", extra={"reason": "payload schema mismatch"})
            return None

    def clear(self) -> list[CookieDescriptor]:
        """Describe the deletion of both session cookies."""
        return [
            self._policy.deletion(self._session_cookie),
            self._policy.deletion(self._access_token_cookie),
        ]

    def save_pending(self, state: PendingAuthState) -> CookieDescriptor:
        """Seal the pending-authorization state into its short-lived cookie."""
        sealed = self._sealer.seal(state.to_wire(), ttl=PENDING_STATE_MAX_AGE)
        cookie = self._policy.cookie(self._state_cookie, sealed, max_age=PENDING_STATE_MAX_AGE)
        # Must survive the cross-site top-level redirect back from the IdP.
        return replace(cookie, same_site="lax")

    def load_pending(self, cookies: Mapping[str, str]) -> PendingAuthState:
        """Recover the pending-authorization state at the callback.

        Raises:
            MissingStateError: If the cookie is absent.
            InvalidStateError: If it cannot be unsealed or has the wrong shape.
        """
        sealed = cookies.get(self._state_cookie)
        if not sealed:
            raise MissingStateError()
        try:
            return PendingAuthState.model_validate(self._sealer.unseal(sealed))
        except SealingError as exc:
            raise InvalidStateError(
                f"Pending authorization state is invalid: {exc.message}"
            ) from exc
        except ValidationError as exc:
            raise InvalidStateError("Pending authorization state has an unexpected shape") from exc

    def clear_pending(self) -> CookieDescriptor:
        """Describe the deletion of the pending-state cookie."""
        return self._policy.deletion(self._state_cookie)
