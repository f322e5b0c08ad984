"""High-level async client wiring the reconciliation engine together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import aiohttp
from aiohttp import web

from crmsync._mqtt import MqttChangeFeed
from crmsync._transport import HttpStore, Store
from crmsync.config import CrmConfig
from crmsync.exceptions import CrmError
from crmsync.feed.manager import ChangeFeed, SubscriptionManager
from crmsync.models.query import CollectionQuery
from crmsync.mutations import MutationCoordinator, TransientUiState
from crmsync.ratelimit import Middleware, RateLimiter, client_key, rate_limit_middleware
from crmsync.state.collection import CollectionHandle, CollectionReconciler

_logger = logging.getLogger(__name__)


class CrmClient:
    """Async client for customers and offers.

    One instance is constructed at application start and passed to the
    consumers that need it.

    Usage::

        async with CrmClient(CrmConfig.from_env()) as client:
            offers = await client.watch("offers", CollectionQuery(filters={"status": "active"}))
            await client.mutations("offers").soft_delete(offer_id)
    """

    def __init__(
        self,
        config: CrmConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        store: Store | None = None,
        feed: ChangeFeed | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._store = store
        self._feed = feed
        self._manager: SubscriptionManager | None = None
        self._reconciler: CollectionReconciler | None = None
        self._ui_states: dict[str, TransientUiState] = {}
        self._mutations: dict[str, MutationCoordinator] = {}
        self.rate_limiter = rate_limiter or RateLimiter(max_keys=config.rate_limit_max_keys)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CrmClient:
        if self._store is None:
            if self._http_session is None:
                timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)
                self._http_session = aiohttp.ClientSession(timeout=timeout)
            self._store = HttpStore(self._config, self._http_session)

        if self._config.feed_enabled:
            if self._feed is None:
                self._feed = MqttChangeFeed(self._config.mqtt)
            self._manager = SubscriptionManager(self._feed)
        self._reconciler = CollectionReconciler(self._store, self._manager)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._reconciler is not None:
            await self._reconciler.close()
            self._reconciler = None
        if self._manager is not None:
            await self._manager.close()
            self._manager = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._mutations.clear()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _require_reconciler(self) -> CollectionReconciler:
        if self._reconciler is None:
            raise CrmError("Client not initialized. Use 'async with CrmClient(...) as client:'")
        return self._reconciler

    @property
    def store(self) -> Store:
        if self._store is None:
            raise CrmError("Client not initialized. Use 'async with CrmClient(...) as client:'")
        return self._store

    @property
    def subscriptions(self) -> SubscriptionManager | None:
        """Subscription manager, or ``None`` when the change feed is disabled."""
        return self._manager

    def ui_state(self, table: str) -> TransientUiState:
        """Transient UI state shared by every consumer of *table*."""
        state = self._ui_states.get(table)
        if state is None:
            state = TransientUiState()
            self._ui_states[table] = state
        return state

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def watch(self, table: str, query: CollectionQuery | None = None) -> CollectionHandle:
        """Watch *table*; see :meth:`CollectionReconciler.watch`."""
        return await self._require_reconciler().watch(table, query)

    def mutations(self, table: str) -> MutationCoordinator:
        """Mutation coordinator for *table*, sharing that table's UI state."""
        coordinator = self._mutations.get(table)
        if coordinator is None:
            coordinator = MutationCoordinator(self.store, table, self.ui_state(table))
            self._mutations[table] = coordinator
        return coordinator

    def rate_limit_middleware(
        self,
        *,
        limit: int | None = None,
        window_length_ms: int | None = None,
        key_func: Callable[[web.Request], str] = client_key,
    ) -> Middleware:
        """``aiohttp.web`` middleware backed by this client's :attr:`rate_limiter`.

        *limit* and *window_length_ms* default to ``rate_limit_default`` and
        ``rate_limit_window_ms`` from the configuration.
        """
        return rate_limit_middleware(
            self.rate_limiter,
            limit=self._config.rate_limit_default if limit is None else limit,
            window_length_ms=self._config.rate_limit_window_ms if window_length_ms is None else window_length_ms,
            key_func=key_func,
        )
