"""Watched collections kept consistent by refetch-on-notification.

Change events are never merged into rows. Any event for a watched table
schedules one refetch per event-loop iteration, and fetch results are applied
last-issued-wins: a result is shown only if no later-issued fetch under the
same query has already been applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from crmsync._transport import Store
from crmsync.exceptions import CrmError, CrmTransportError
from crmsync.feed.manager import ChannelState, SubscriptionHandle, SubscriptionManager
from crmsync.models._base import CrmRow
from crmsync.models.query import CollectionQuery, RowFilter, SearchTerm, SortKey
from crmsync.models.rows import validate_rows
from crmsync.state.events import ChangeEvent
from crmsync.state.policy import should_apply_result

_logger = logging.getLogger(__name__)

Listener = Callable[["WatchedCollection"], None]


@dataclass
class WatchedCollection:
    """Client-held view over one table, derived from the store."""

    table: str
    query: CollectionQuery
    rows: tuple[CrmRow, ...] = ()
    is_loading: bool = False
    request_sequence: int = 0
    applied_sequence: int = 0
    error: CrmError | None = None
    is_stale: bool = False
    last_event_at: datetime | None = None
    quarantined: tuple[dict[str, Any], ...] = field(default=(), repr=False)

    @property
    def ids(self) -> list[str]:
        return [row.id for row in self.rows]


class CollectionHandle:
    """Live handle on a :class:`WatchedCollection`.

    Created by :meth:`CollectionReconciler.watch`; call :meth:`unwatch` when
    the consumer goes away.
    """

    def __init__(
        self,
        *,
        table: str,
        query: CollectionQuery,
        store: Store,
        manager: SubscriptionManager | None,
        on_close: Callable[[CollectionHandle], None] | None = None,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._collection = WatchedCollection(table=table, query=query)
        self._store = store
        self._manager = manager
        self._on_close = on_close
        self._subscription: SubscriptionHandle | None = None
        self._flush_handle: asyncio.Handle | None = None
        self._inflight: dict[int, asyncio.Task[None]] = {}
        self._listeners: list[Listener] = []
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._channel_error: CrmTransportError | None = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def collection(self) -> WatchedCollection:
        return self._collection

    @property
    def rows(self) -> tuple[CrmRow, ...]:
        return self._collection.rows

    @property
    def query(self) -> CollectionQuery:
        return self._collection.query

    @property
    def is_closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* after every published change; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_idle(self) -> WatchedCollection:
        """Wait until no refetch is scheduled or in flight."""
        await self._idle.wait()
        return self._collection

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        if self._manager is not None:
            try:
                self._subscription = await self._manager.subscribe(
                    {self._collection.table},
                    self._on_event,
                    on_status=self._on_channel_status,
                )
            except CrmTransportError as exc:
                _logger.warning("Watching %s without change feed: %s", self._collection.table, exc)
                self._channel_error = exc
                self._collection.error = exc
                self._collection.is_stale = True
        self._issue_fetch()

    async def unwatch(self) -> None:
        """Stop refetching and release the subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._collection.is_loading = False
        self._listeners.clear()
        self._idle.set()

        subscription = self._subscription
        self._subscription = None
        if self._on_close is not None:
            self._on_close(self)
        if subscription is not None and self._manager is not None:
            await self._manager.unsubscribe(subscription)
        _logger.debug("Unwatched %s", self._collection.table)

    # ------------------------------------------------------------------
    # Query changes
    # ------------------------------------------------------------------

    async def set_query(self, query: CollectionQuery) -> WatchedCollection:
        """Replace the query and refetch; older in-flight results are discarded."""
        self._require_open()
        self._collection.query = query
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        return await self._await_fetch(self._issue_fetch())

    async def set_filters(self, filters: Mapping[str, Any] | Iterable[RowFilter]) -> WatchedCollection:
        if not isinstance(filters, Mapping):
            filters = tuple(filters)
        parsed = CollectionQuery(filters=filters).filters
        return await self.set_query(self.query.model_copy(update={"filters": parsed}))

    async def set_search(self, term: str | None, columns: Iterable[str] | None = None) -> WatchedCollection:
        search: SearchTerm | None = None
        if term and term.strip():
            cols = tuple(columns) if columns is not None else SearchTerm.model_fields["columns"].default
            search = SearchTerm(term=term, columns=cols)
        return await self.set_query(self.query.model_copy(update={"search": search}))

    async def set_order(self, column: str, *, descending: bool = True) -> WatchedCollection:
        return await self.set_query(
            self.query.model_copy(update={"order": SortKey(column=column, descending=descending)})
        )

    async def refresh(self) -> WatchedCollection:
        """Force a refetch under the current query."""
        self._require_open()
        return await self._await_fetch(self._issue_fetch())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _await_fetch(self, task: asyncio.Task[None]) -> WatchedCollection:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if self._closed and task.cancelled() and not caller_cancelled:
                # The fetch was cancelled by ``unwatch``, not the caller.
                raise CrmError(f"Collection {self._collection.table} is no longer watched") from None
            raise
        return self._collection

    def _require_open(self) -> None:
        if self._closed:
            raise CrmError(f"Collection {self._collection.table} is no longer watched")

    def _on_event(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self._collection.last_event_at = event.delivered_at
        self._schedule_refetch()

    def _schedule_refetch(self) -> None:
        if self._flush_handle is not None:
            return
        self._idle.clear()
        self._flush_handle = self._loop.call_soon(self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        if self._closed:
            return
        self._issue_fetch()

    def _on_channel_status(self, state: ChannelState, error: CrmTransportError | None) -> None:
        if self._closed:
            return
        collection = self._collection
        if state == ChannelState.DISCONNECTED:
            self._channel_error = error or CrmTransportError(f"Change feed for {collection.table} dropped")
            collection.error = self._channel_error
            collection.is_stale = True
            self._publish()
            return
        if state == ChannelState.CONNECTED and collection.is_stale:
            # Events may have been missed while disconnected.
            self._channel_error = None
            collection.is_stale = False
            collection.error = None
            self._schedule_refetch()
            self._publish()

    def _issue_fetch(self) -> asyncio.Task[None]:
        collection = self._collection
        collection.request_sequence += 1
        sequence = collection.request_sequence
        collection.is_loading = True
        self._idle.clear()
        task = self._loop.create_task(self._run_fetch(sequence, collection.query))
        self._inflight[sequence] = task
        task.add_done_callback(partial(self._fetch_done, sequence))
        _logger.debug("Fetch #%s issued for %s", sequence, collection.table)
        return task

    async def _run_fetch(self, sequence: int, query: CollectionQuery) -> None:
        collection = self._collection
        try:
            payloads = await self._store.list(collection.table, query)
        except CrmError as exc:
            if self._is_current(sequence, query):
                _logger.warning("Fetch #%s for %s failed, keeping previous rows: %s", sequence, collection.table, exc)
                collection.error = exc
            else:
                _logger.debug("Superseded fetch #%s for %s failed: %s", sequence, collection.table, exc)
            return

        rows, quarantined = validate_rows(collection.table, payloads)
        if self._closed or not self._is_current(sequence, query):
            _logger.debug(
                "Discarding fetch #%s for %s (applied=#%s)",
                sequence,
                collection.table,
                collection.applied_sequence,
            )
            return

        collection.rows = tuple(rows)
        collection.quarantined = tuple(quarantined)
        collection.applied_sequence = sequence
        collection.error = self._channel_error
        _logger.debug("Fetch #%s applied for %s rows=%s", sequence, collection.table, len(rows))

    def _is_current(self, sequence: int, query: CollectionQuery) -> bool:
        return should_apply_result(
            result_sequence=sequence,
            applied_sequence=self._collection.applied_sequence,
            result_query=query,
            current_query=self._collection.query,
        )

    def _fetch_done(self, sequence: int, task: asyncio.Task[None]) -> None:
        self._inflight.pop(sequence, None)
        if not task.cancelled() and task.exception() is not None:
            _logger.error(
                "Fetch #%s for %s crashed",
                sequence,
                self._collection.table,
                exc_info=task.exception(),
            )
        if self._closed:
            return
        applied = self._collection.applied_sequence
        self._collection.is_loading = any(seq > applied for seq in self._inflight)
        if not self._inflight and self._flush_handle is None:
            self._idle.set()
        self._publish()

    def _publish(self) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(self._collection)
            except Exception:
                _logger.exception("Listener of %s failed", self._collection.table)


class CollectionReconciler:
    """Creates and tracks watched collections.

    Usage::

        reconciler = CollectionReconciler(store, manager)
        offers = await reconciler.watch("offers", CollectionQuery(filters={"status": "active"}))
        await offers.wait_idle()
        ...
        await offers.unwatch()
    """

    def __init__(self, store: Store, manager: SubscriptionManager | None = None) -> None:
        self._store = store
        self._manager = manager
        self._handles: list[CollectionHandle] = []

    @property
    def watched(self) -> tuple[CollectionHandle, ...]:
        return tuple(self._handles)

    async def watch(self, table: str, query: CollectionQuery | None = None) -> CollectionHandle:
        """Start watching *table*; the initial fetch is issued before returning."""
        handle = CollectionHandle(
            table=table,
            query=query or CollectionQuery(),
            store=self._store,
            manager=self._manager,
            on_close=self._forget,
        )
        self._handles.append(handle)
        await handle._start()
        return handle

    def _forget(self, handle: CollectionHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    async def close(self) -> None:
        for handle in tuple(self._handles):
            await handle.unwatch()
