"""JWKS provider and ID token verification.

Fetches the IdP's published signing keys from the discovery ``jwks_uri``
and verifies ID tokens with PyJWT:

- Asynchronous fetch through the shared httpx client
- In-memory key-set caching with a configurable TTL
- One forced refresh on ``kid`` miss (handles key rotation)
- Explicit :meth:`JWKSProvider.invalidate` for rotation events

Only asymmetric algorithms are accepted; ``none`` and HMAC algorithms are
rejected before any key lookup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
import jwt as pyjwt
from jwt import PyJWK, PyJWKSet

from clavis.exceptions import IDTokenVerificationError, JWKSUnavailableError

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS: frozenset[str] = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "ES256",
        "ES384",
        "ES512",
        "EdDSA",
    }
)

_REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub"]
_DEFAULT_LEEWAY = 60


class JWKSProvider:
    """JWKS key provider with caching and rotation support.

    Lifecycle: created by the OIDC client once the discovery document is
    known; lives as long as the client.

    Args:
        jwks_uri: The IdP's JWKS endpoint (from discovery).
        client: HTTP client used to fetch the key set.
        cache_ttl: Key-set cache TTL in seconds (default 300).
        timeout: Fetch timeout in seconds.

    Raises:
        ValueError: If jwks_uri is empty.

    Example:
        >>> provider = JWKSProvider(document.jwks_uri, http_client)
        >>> claims = await provider.verify_id_token(
        ...     id_token, issuer=document.issuer, audience="my-client"
        ... )
    """

    def __init__(
        self,
        jwks_uri: str,
        client: httpx.AsyncClient,
        cache_ttl: int = 300,
        timeout: float = 10.0,
    ) -> None:
        if not jwks_uri:
            raise ValueError("jwks_uri is required for ID token verification")
        self._jwks_uri = jwks_uri
        self._client = client
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._key_set: PyJWKSet | None = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def jwks_uri(self) -> str:
        return self._jwks_uri

    def invalidate(self) -> None:
        """Drop cached keys; the next verification re-fetches them."""
        self._key_set = None
        self._fetched_at = 0.0

    def _is_fresh(self) -> bool:
        return (
            self._key_set is not None
            and time.monotonic() - self._fetched_at < self._cache_ttl
        )

    async def _fetch(self) -> PyJWKSet:
        try:
            response = await self._client.get(self._jwks_uri, timeout=self._timeout)
            response.raise_for_status()
            key_set = PyJWKSet.from_dict(response.json())
        except httpx.HTTPError as exc:
            logger.warning("jwks_fetch_failed", extra={"jwks_uri": self._jwks_uri})
            raise JWKSUnavailableError(
                self._jwks_uri, f"could not fetch signing keys: {exc}"
            ) from exc
        except (ValueError, pyjwt.PyJWKSetError) as exc:
            logger.warning("jwks_malformed", extra={"jwks_uri": self._jwks_uri})
            raise JWKSUnavailableError(self._jwks_uri, "signing key set is malformed") from exc

        self._key_set = key_set
        self._fetched_at = time.monotonic()
        logger.debug(
            "jwks_fetched",
            extra={"jwks_uri": self._jwks_uri, "key_count": len(key_set.keys)},
        )
        return key_set

    async def _get_key_set(self, force: bool = False) -> PyJWKSet:
        if not force and self._is_fresh():
            return self._key_set  # type: ignore[return-value]
        async with self._lock:
            if not force and self._is_fresh():
                return self._key_set  # type: ignore[return-value]
            return await self._fetch()

    @staticmethod
    def _select(key_set: PyJWKSet, kid: str | None) -> PyJWK | None:
        if kid is None:
            signing = [k for k in key_set.keys if k.public_key_use in (None, "sig")]
            return signing[0] if len(signing) == 1 else None
        for key in key_set.keys:
            if key.key_id == kid:
                return key
        return None

    async def get_signing_key(self, token: str) -> PyJWK:
        """Resolve the signing key for a compact JWT.

        Looks the ``kid`` up in the cached key set and refreshes once on a
        miss before giving up.

        Raises:
            IDTokenVerificationError: If the header is malformed, the
                algorithm is not allowed, or no matching key exists.
            JWKSUnavailableError: If the key set cannot be fetched.
        """
        try:
            header = pyjwt.get_unverified_header(token)
        except pyjwt.DecodeError as exc:
            raise IDTokenVerificationError("token is malformed") from exc

        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            raise IDTokenVerificationError(f"algorithm {alg!r} is not allowed")

        kid = header.get("kid")
        key = self._select(await self._get_key_set(), kid)
        if key is None:
            # Key rotation: the IdP may have published a new key since our fetch.
            key = self._select(await self._get_key_set(force=True), kid)
        if key is None:
            raise IDTokenVerificationError(f"no signing key matches kid {kid!r}")
        return key

    async def verify_id_token(
        self,
        id_token: str,
        *,
        issuer: str,
        audience: str,
        nonce: str | None = None,
        verify_exp: bool = True,
        leeway: int = _DEFAULT_LEEWAY,
    ) -> dict[str, Any]:
        """Verify an ID token's signature and standard claims.

        Args:
            id_token: Compact JWT.
            issuer: Expected ``iss`` (the discovery document issuer).
            audience: Expected ``aud`` (the client_id).
            nonce: Expected ``nonce`` claim, if one was sent.
            verify_exp: Enforce ``exp``.
            leeway: Clock-skew allowance in seconds.

        Returns:
            Verified claims.

        Raises:
            IDTokenVerificationError: On any verification failure.
            JWKSUnavailableError: If the key set cannot be fetched.
        """
        key = await self.get_signing_key(id_token)
        alg = pyjwt.get_unverified_header(id_token)["alg"]
        try:
            claims: dict[str, Any] = pyjwt.decode(
                id_token,
                key.key,
                algorithms=[alg],
                audience=audience,
                issuer=issuer,
                leeway=leeway,
                options={"require": _REQUIRED_CLAIMS, "verify_exp": verify_exp},
            )
        except pyjwt.ExpiredSignatureError as exc:
            raise IDTokenVerificationError("token has expired") from exc
        except pyjwt.InvalidIssuerError as exc:
            raise IDTokenVerificationError("invalid issuer claim") from exc
        except pyjwt.InvalidAudienceError as exc:
            raise IDTokenVerificationError("invalid audience claim") from exc
        except pyjwt.MissingRequiredClaimError as exc:
            raise IDTokenVerificationError(f"missing required claim: {exc.claim}") from exc
        except pyjwt.InvalidSignatureError as exc:
            raise IDTokenVerificationError("signature verification failed") from exc
        except pyjwt.InvalidTokenError as exc:
            raise IDTokenVerificationError("token validation failed") from exc

        if nonce is not None and claims.get("nonce") != nonce:
            raise IDTokenVerificationError("nonce mismatch")
        return claims
