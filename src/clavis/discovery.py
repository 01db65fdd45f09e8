"""OIDC discovery with a process-lifetime cache.

Fetches ``{issuer}/.well-known/openid-configuration`` once and caches the
parsed document. Concurrent first callers serialise on an ``asyncio.Lock``
so exactly one fetch happens and every caller observes the same object.
A failed fetch caches nothing, so the next call retries.

IdP metadata can change (JWKS rotation, endpoint moves), so the cache
exposes :meth:`DiscoveryCache.invalidate` rather than assuming it never does.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from clavis.exceptions import DiscoveryError
from clavis.models import DiscoveryDocument

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


def discovery_url(issuer: str) -> str:
    """Build the discovery document URL for an issuer."""
    return f"{issuer.rstrip('/')}{WELL_KNOWN_PATH}"


async def fetch_discovery_document(
    issuer: str,
    client: httpx.AsyncClient,
    timeout: float = 10.0,
) -> DiscoveryDocument:
    """Fetch and validate an IdP discovery document.

    Args:
        issuer: OIDC issuer base URL.
        client: HTTP client to use.
        timeout: Request timeout in seconds.

    Returns:
        Parsed DiscoveryDocument.

    Raises:
        DiscoveryError: On transport failure, non-2xx status, invalid JSON,
            missing required metadata, or issuer mismatch.
    """
    issuer = issuer.rstrip("/")
    url = discovery_url(issuer)
    try:
        response = await client.get(url, timeout=timeout)
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPStatusError as exc:
        raise DiscoveryError(issuer, f"HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise DiscoveryError(issuer, f"{type(exc).__name__}: {exc}") from exc
    except ValueError as exc:
        raise DiscoveryError(issuer, "response is not valid JSON") from exc

    if not isinstance(body, dict):
        raise DiscoveryError(issuer, "response is not a JSON object")

    try:
        document = DiscoveryDocument.model_validate(body)
    except ValidationError as exc:
        raise DiscoveryError(issuer, "document is missing required metadata") from exc

    if document.issuer.rstrip("/") != issuer:
        logger.warning(
            "oidc_discovery_issuer_mismatch",
            extra={"expected": issuer, "discovered": document.issuer},
        )
        raise DiscoveryError(issuer, f"document issuer {document.issuer!r} does not match")

    logger.info(
        "oidc_discovery_success",
        extra={"issuer": issuer, "jwks_uri": document.jwks_uri},
    )
    return document


class DiscoveryCache:
    """Lazily fetched, explicitly invalidated discovery document.

    Args:
        issuer: OIDC issuer base URL.
        timeout: Fetch timeout in seconds.

    Example:
        >>> cache = DiscoveryCache("https://idp.example.com")
        >>> document = await cache.get(http_client)
        >>> cache.invalidate()  # e.g. after a JWKS rotation event
    """

    def __init__(self, issuer: str, timeout: float = 10.0) -> None:
        self._issuer = issuer.rstrip("/")
        self._timeout = timeout
        self._document: DiscoveryDocument | None = None
        self._lock = asyncio.Lock()

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def cached(self) -> DiscoveryDocument | None:
        """The cached document, or ``None`` before the first successful fetch."""
        return self._document

    async def get(self, client: httpx.AsyncClient) -> DiscoveryDocument:
        """Return the cached document, fetching it on first use.

        Raises:
            DiscoveryError: If the fetch fails.
        """
        document = self._document
        if document is not None:
            return document
        async with self._lock:
            if self._document is None:
                self._document = await fetch_discovery_document(
                    self._issuer, client, timeout=self._timeout
                )
            return self._document

    def invalidate(self) -> None:
        """Drop the cached document; the next :meth:`get` re-fetches."""
        self._document = None
        logger.info("oidc_discovery_invalidated", extra={"issuer": self._issuer})
