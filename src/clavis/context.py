"""Explicit runtime context for the session core.

An :class:`OIDCContext` owns everything that lives longer than a request:
the resolved settings, the OIDC client with its discovery and JWKS caches,
the cookie store and the session manager. Components are built once, on
first use, behind a lock; nothing is held in module globals except the
optional process default returned by :func:`get_default_context`.

Usage:
    from fastapi import FastAPI
    from clavis.context import OIDCContext, lifespan

    context = OIDCContext()
    app = FastAPI(lifespan=lifespan(context))
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import httpx

from clavis.config import Configuration, OIDCSettings, get_configuration
from clavis.events import AuthEventLogger
from clavis.exceptions import DiscoveryError
from clavis.oidc_client import OIDCClient
from clavis.session import Clock, SessionManager, epoch_ms
from clavis.session_store import CookieSessionStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager

    from clavis.models import DiscoveryDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Components:
    settings: OIDCSettings
    client: OIDCClient
    store: CookieSessionStore
    manager: SessionManager


class OIDCContext:
    """Lazily built, lock-guarded owner of the session core's components.

    Args:
        configuration: Configuration resolver; defaults to the process one.
        http_client: Optional shared httpx.AsyncClient (caller closes it).
            Without one, the context creates a single client on first use,
            reuses it across :meth:`reset`, and closes it in :meth:`aclose`.
        event_logger: Audit event logger; defaults to the structlog sink.
        clock: Epoch-milliseconds clock for session expiry checks.
    """

    def __init__(
        self,
        configuration: Configuration | None = None,
        http_client: httpx.AsyncClient | None = None,
        event_logger: AuthEventLogger | None = None,
        clock: Clock = epoch_ms,
    ) -> None:
        self._configuration = configuration or get_configuration()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._events = event_logger or AuthEventLogger()
        self._clock = clock
        self._lock = threading.Lock()
        self._components: _Components | None = None

    def _ensure(self) -> _Components:
        components = self._components
        if components is not None:
            return components
        with self._lock:
            if self._components is None:
                settings = self._configuration.settings()
                if self._http_client is None:
                    self._http_client = httpx.AsyncClient(timeout=settings.http_timeout)
                client = OIDCClient(settings, client=self._http_client)
                store = CookieSessionStore(settings)
                self._components = _Components(
                    settings=settings,
                    client=client,
                    store=store,
                    manager=SessionManager(client, store, self._events, clock=self._clock),
                )
                logger.info(
                    "oidc_context_initialized",
                    extra={"issuer": settings.issuer, "client_id": settings.client_id},
                )
            return self._components

    @property
    def configuration(self) -> Configuration:
        return self._configuration

    @property
    def settings(self) -> OIDCSettings:
        """Resolved settings.

        Raises:
            ConfigurationError: If configuration is incomplete or invalid.
        """
        return self._ensure().settings

    @property
    def client(self) -> OIDCClient:
        return self._ensure().client

    @property
    def store(self) -> CookieSessionStore:
        return self._ensure().store

    @property
    def session_manager(self) -> SessionManager:
        return self._ensure().manager

    @property
    def events(self) -> AuthEventLogger:
        return self._events

    async def startup(self, prewarm: bool = True) -> None:
        """Resolve configuration and optionally pre-warm discovery.

        A discovery failure here is logged, not raised; the first request
        retries it.

        Raises:
            ConfigurationError: If configuration is incomplete or invalid.
        """
        client = self.client
        if not prewarm:
            return
        try:
            await client.discover()
        except DiscoveryError:
            logger.warning("oidc_discovery_prewarm_failed", exc_info=True)

    async def refresh_discovery(self) -> DiscoveryDocument:
        """Drop cached IdP metadata and signing keys, then re-fetch metadata.

        Raises:
            DiscoveryError: If the re-fetch fails.
        """
        client = self.client
        client.invalidate_caches()
        return await client.discover()

    async def aclose(self) -> None:
        """Close the HTTP client this context created, if any.

        Components are dropped too; a later use rebuilds them with a new client.
        """
        with self._lock:
            owned = self._http_client if self._owns_http_client else None
            if owned is not None:
                self._http_client = None
                self._components = None
        if owned is not None:
            await owned.aclose()

    def reset(self) -> None:
        """Forget built components so the next use re-reads configuration.

        The HTTP client is kept and shared with the rebuilt components.
        """
        with self._lock:
            self._components = None


@lru_cache(maxsize=1)
def get_default_context() -> OIDCContext:
    """Get the process-default OIDCContext.

    Clear with ``get_default_context.cache_clear()`` for testing.
    """
    return OIDCContext()


def lifespan(
    context: OIDCContext | None = None,
    prewarm: bool = True,
) -> Callable[[Any], AbstractAsyncContextManager[None]]:
    """Build an application lifespan that starts and closes ``context``.

    Startup:
        1. Resolve configuration (fatal on ConfigurationError).
        2. Pre-warm the discovery cache.
        3. Expose the context as ``app.state.oidc_context``.

    Shutdown:
        1. Close the context's HTTP client.
    """

    @asynccontextmanager
    async def _oidc_lifespan(app: Any) -> AsyncIterator[None]:
        ctx = context or get_default_context()
        await ctx.startup(prewarm=prewarm)
        app.state.oidc_context = ctx
        try:
            yield
        finally:
            await ctx.aclose()
            logger.info("oidc_lifespan_shutdown_complete")

    return _oidc_lifespan
