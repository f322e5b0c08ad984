"""Change-feed subscription manager.

Owns:
- one multiplexed channel per distinct table set
- routing of inbound events to the handles registered on that channel
- race-free teardown: a handle is deregistered before ``unsubscribe`` first
  suspends, so no event reaches it afterwards
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from typing import Any, Protocol

from crmsync.exceptions import CrmTransportError
from crmsync.models.query import RowFilter
from crmsync.state.events import ALL_OPERATIONS, ChangeEvent, ChangeOperation
from crmsync.state.policy import event_matches

_logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]


class ChannelState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


StatusCallback = Callable[[ChannelState, CrmTransportError | None], None]


class ChangeFeed(Protocol):
    """Structural change-feed transport interface.

    ``deliver`` must be invoked on the event loop thread, once per event, in
    arrival order. ``on_status`` reports drops (with an error) and
    re-established connections.
    """

    async def open(
        self,
        key: frozenset[str],
        deliver: EventCallback,
        on_status: StatusCallback,
    ) -> Any: ...

    async def close(self, token: Any) -> None: ...


@dataclass(eq=False)
class SubscriptionHandle:
    """A consumer's registration on a shared channel."""

    tables: frozenset[str]
    callback: EventCallback
    filters: Mapping[str, tuple[RowFilter, ...]] = field(default_factory=dict)
    operations: frozenset[ChangeOperation] = ALL_OPERATIONS
    on_status: StatusCallback | None = None
    id: str = field(default_factory=lambda: secrets.token_hex(8))
    active: bool = False
    _channel: _Channel | None = field(default=None, repr=False)

    @property
    def state(self) -> ChannelState:
        if not self.active or self._channel is None:
            return ChannelState.DISCONNECTED
        return self._channel.state

    def wants(self, event: ChangeEvent) -> bool:
        if event.table not in self.tables:
            return False
        return event_matches(
            event,
            operations=self.operations,
            filters=self.filters.get(event.table, ()),
        )


@dataclass(eq=False)
class _Channel:
    key: frozenset[str]
    state: ChannelState = ChannelState.CONNECTING
    token: Any = None
    opening: asyncio.Task[None] | None = None
    waiters: int = 0
    handles: list[SubscriptionHandle] = field(default_factory=list)


def _normalize_tables(tables: str | Iterable[str]) -> frozenset[str]:
    if isinstance(tables, str):
        tables = (tables,)
    normalized = frozenset(t.strip() for t in tables if t and t.strip())
    if not normalized:
        raise ValueError("at least one table is required")
    return normalized


class SubscriptionManager:
    """Routes change-feed events to subscribers.

    Usage::

        manager = SubscriptionManager(feed)
        handle = await manager.subscribe({"offers"}, on_event)
        ...
        await manager.unsubscribe(handle)
    """

    def __init__(self, feed: ChangeFeed) -> None:
        self._feed = feed
        self._channels: dict[frozenset[str], _Channel] = {}
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def subscribe(
        self,
        tables: str | Iterable[str],
        on_event: EventCallback,
        *,
        filters: Mapping[str, Sequence[RowFilter]] | None = None,
        operations: Iterable[ChangeOperation] | None = None,
        on_status: StatusCallback | None = None,
    ) -> SubscriptionHandle:
        """Register *on_event* for changes on *tables*.

        Raises
        ------
        CrmTransportError
            If the channel for this table set could not be opened. No handle
            is registered in that case and nothing is retried.
        """
        key = _normalize_tables(tables)
        handle = SubscriptionHandle(
            tables=key,
            callback=on_event,
            filters={table: tuple(table_filters) for table, table_filters in (filters or {}).items()},
            operations=frozenset(operations) if operations is not None else ALL_OPERATIONS,
            on_status=on_status,
        )

        channel = self._channels.get(key)
        if channel is None:
            channel = _Channel(key=key)
            self._channels[key] = channel
            channel.opening = asyncio.get_running_loop().create_task(self._open(channel))

        opening = channel.opening
        if opening is not None:
            channel.waiters += 1
            try:
                # Shielded so a cancelled subscriber does not abort a shared open.
                await asyncio.shield(opening)
            except asyncio.CancelledError:
                opening.add_done_callback(partial(self._release_if_unused, channel))
                raise
            finally:
                channel.waiters -= 1

        if self._channels.get(key) is not channel:
            raise CrmTransportError(f"Channel {sorted(key)} closed while subscribing")

        handle._channel = channel
        handle.active = True
        channel.handles.append(handle)
        _logger.debug("Subscribed handle=%s tables=%s", handle.id, sorted(key))
        return handle

    async def _open(self, channel: _Channel) -> None:
        try:
            channel.token = await self._feed.open(
                channel.key,
                partial(self._dispatch, channel),
                partial(self._on_channel_status, channel),
            )
        except Exception as exc:
            if self._channels.get(channel.key) is channel:
                del self._channels[channel.key]
            channel.state = ChannelState.DISCONNECTED
            _logger.warning("Opening channel %s failed: %s", sorted(channel.key), exc)
            if isinstance(exc, CrmTransportError):
                raise
            raise CrmTransportError(f"Opening channel {sorted(channel.key)} failed: {exc}") from exc
        finally:
            channel.opening = None
        channel.state = ChannelState.CONNECTED
        _logger.debug("Channel %s connected", sorted(channel.key))

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Deregister *handle*; closes the channel when it was the last one.

        Deregistration happens before the first suspension point. Calling
        this twice is a no-op.
        """
        if not handle.active:
            return
        handle.active = False
        channel = handle._channel
        handle._channel = None
        if channel is None:
            return
        if handle in channel.handles:
            channel.handles.remove(handle)
        _logger.debug("Unsubscribed handle=%s tables=%s", handle.id, sorted(handle.tables))

        if channel.handles or self._channels.get(channel.key) is not channel:
            return
        del self._channels[channel.key]
        await self._close_channel(channel)

    async def close(self) -> None:
        """Deregister every handle and close every channel."""
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            for handle in channel.handles:
                handle.active = False
                handle._channel = None
            channel.handles.clear()
            if channel.opening is not None:
                channel.opening.cancel()
            await self._close_channel(channel)
        if self._closing:
            await asyncio.gather(*tuple(self._closing))

    def _release_if_unused(self, channel: _Channel, opening: asyncio.Task[None]) -> None:
        """Close a channel whose every subscriber was cancelled during the open."""
        if not opening.cancelled() and opening.exception() is not None:
            # Already logged and unregistered by ``_open``.
            return
        if channel.handles or channel.waiters or self._channels.get(channel.key) is not channel:
            return
        del self._channels[channel.key]
        _logger.debug("Channel %s abandoned while opening", sorted(channel.key))
        task = asyncio.get_running_loop().create_task(self._close_channel(channel))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_channel(self, channel: _Channel) -> None:
        channel.state = ChannelState.DISCONNECTED
        token = channel.token
        channel.token = None
        if token is None:
            return
        try:
            await self._feed.close(token)
        except CrmTransportError:
            _logger.warning("Closing channel %s failed", sorted(channel.key), exc_info=True)
        else:
            _logger.debug("Channel %s closed", sorted(channel.key))

    def _dispatch(self, channel: _Channel, event: ChangeEvent) -> None:
        if self._channels.get(channel.key) is not channel:
            return
        # Snapshot: callbacks may unsubscribe (their own or other) handles.
        for handle in tuple(channel.handles):
            if not handle.active or not handle.wants(event):
                continue
            try:
                handle.callback(event)
            except Exception:
                _logger.exception("Subscriber %s failed handling %s on %s", handle.id, event.operation, event.table)

    def _on_channel_status(
        self,
        channel: _Channel,
        state: ChannelState,
        error: CrmTransportError | None = None,
    ) -> None:
        if self._channels.get(channel.key) is not channel:
            return
        previous = channel.state
        channel.state = state
        if state == ChannelState.DISCONNECTED:
            _logger.warning("Channel %s dropped: %s", sorted(channel.key), error)
        elif previous != state:
            _logger.debug("Channel %s state %s -> %s", sorted(channel.key), previous, state)
        for handle in tuple(channel.handles):
            if not handle.active or handle.on_status is None:
                continue
            try:
                handle.on_status(state, error)
            except Exception:
                _logger.exception("Status callback of subscriber %s failed", handle.id)
