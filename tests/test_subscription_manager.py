from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from conftest import FakeFeed, customer, offer

from crmsync.exceptions import CrmTransportError
from crmsync.feed.manager import ChannelState, SubscriptionManager
from crmsync.models.query import RowFilter
from crmsync.state.events import ChangeEvent, ChangeOperation, RowDeleted, RowInserted, RowUpdated


@pytest.mark.asyncio
async def test_unsubscribed_handle_receives_nothing(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    handle = await manager.subscribe({"offers"}, received.append)

    await manager.unsubscribe(handle)
    feed.emit(RowInserted(table="offers", new_row=offer("A")))

    assert received == []
    assert handle.active is False
    assert handle.state == ChannelState.DISCONNECTED


@dataclass
class _SlowCloseFeed(FakeFeed):
    release: asyncio.Event = field(default_factory=asyncio.Event)

    async def close(self, token: int) -> None:
        await self.release.wait()
        await super().close(token)


@pytest.mark.asyncio
async def test_deregistration_happens_before_channel_close_completes() -> None:
    feed = _SlowCloseFeed()
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    handle = await manager.subscribe({"offers"}, received.append)
    _key, deliver, _status = next(iter(feed.channels.values()))

    task = asyncio.create_task(manager.unsubscribe(handle))
    await asyncio.sleep(0)
    assert handle.active is False

    # The transport connection is still open and keeps delivering.
    deliver(RowInserted(table="offers", new_row=offer("A")))
    assert received == []

    feed.release.set()
    await task
    assert feed.closed == [frozenset({"offers"})]


@pytest.mark.asyncio
async def test_same_table_set_shares_one_channel(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    first: list[ChangeEvent] = []
    second: list[ChangeEvent] = []

    h1 = await manager.subscribe(["offers", "customers"], first.append)
    h2 = await manager.subscribe({"customers", "offers"}, second.append)

    assert h1.id != h2.id
    assert feed.opened == [frozenset({"offers", "customers"})]
    assert manager.channel_count == 1

    feed.emit(RowInserted(table="customers", new_row=customer("C1")))
    assert len(first) == len(second) == 1

    await manager.unsubscribe(h1)
    assert feed.closed == []
    feed.emit(RowInserted(table="offers", new_row=offer("O1")))
    assert len(first) == 1
    assert len(second) == 2

    await manager.unsubscribe(h2)
    assert feed.closed == [frozenset({"offers", "customers"})]
    assert manager.channel_count == 0


@pytest.mark.asyncio
async def test_distinct_table_sets_get_distinct_channels(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    offers: list[ChangeEvent] = []
    customers: list[ChangeEvent] = []
    await manager.subscribe("offers", offers.append)
    await manager.subscribe("customers", customers.append)

    feed.emit(RowInserted(table="offers", new_row=offer("O1")))

    assert manager.channel_count == 2
    assert len(offers) == 1
    assert customers == []


@pytest.mark.asyncio
async def test_row_filter_matches_either_side_of_update(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    await manager.subscribe(
        {"offers"},
        received.append,
        filters={"offers": [RowFilter.create("customer_id", "C1")]},
    )

    feed.emit(RowInserted(table="offers", new_row=offer("O1", customer_id="C2")))
    feed.emit(RowInserted(table="offers", new_row=offer("O2", customer_id="C1")))
    # Moving away from C1 must still be reported to a C1 watcher.
    feed.emit(
        RowUpdated(
            table="offers",
            previous_row=offer("O2", customer_id="C1"),
            new_row=offer("O2", customer_id="C9"),
        )
    )

    assert [type(e) for e in received] == [RowInserted, RowUpdated]


@pytest.mark.asyncio
async def test_operation_filter(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    await manager.subscribe({"offers"}, received.append, operations={ChangeOperation.DELETE})

    feed.emit(RowInserted(table="offers", new_row=offer("O1")))
    feed.emit(RowDeleted(table="offers", previous_row=offer("O1")))

    assert [e.operation for e in received] == [ChangeOperation.DELETE]


@pytest.mark.asyncio
async def test_events_delivered_in_arrival_order(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    await manager.subscribe({"offers"}, received.append)

    for n in range(5):
        feed.emit(RowInserted(table="offers", new_row=offer(f"O{n}")))

    assert [e.new_row["id"] for e in received] == ["O0", "O1", "O2", "O3", "O4"]


@pytest.mark.asyncio
async def test_open_failure_raises_and_registers_nothing() -> None:
    feed = FakeFeed(fail_open=True)
    manager = SubscriptionManager(feed)

    with pytest.raises(CrmTransportError):
        await manager.subscribe({"offers"}, lambda _e: None)

    assert manager.channel_count == 0
    feed.fail_open = False
    handle = await manager.subscribe({"offers"}, lambda _e: None)
    assert handle.state == ChannelState.CONNECTED


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_other_subscribers(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []

    def explode(_event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    await manager.subscribe({"offers"}, explode)
    await manager.subscribe({"offers"}, received.append)

    feed.emit(RowInserted(table="offers", new_row=offer("O1")))

    assert len(received) == 1


@pytest.mark.asyncio
async def test_drop_is_reported_to_status_callbacks(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    statuses: list[tuple[ChannelState, CrmTransportError | None]] = []
    handle = await manager.subscribe({"offers"}, lambda _e: None, on_status=lambda s, e: statuses.append((s, e)))

    feed.drop("socket closed")

    assert handle.state == ChannelState.DISCONNECTED
    assert statuses[0][0] == ChannelState.DISCONNECTED
    assert isinstance(statuses[0][1], CrmTransportError)

    feed.reconnect()
    assert handle.state == ChannelState.CONNECTED


@pytest.mark.asyncio
async def test_double_unsubscribe_is_noop(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    handle = await manager.subscribe({"offers"}, lambda _e: None)

    await manager.unsubscribe(handle)
    await manager.unsubscribe(handle)

    assert len(feed.closed) == 1


@pytest.mark.asyncio
async def test_close_tears_down_every_channel(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    h1 = await manager.subscribe("offers", lambda _e: None)
    h2 = await manager.subscribe("customers", lambda _e: None)

    await manager.close()

    assert sorted(sorted(k) for k in feed.closed) == [["customers"], ["offers"]]
    assert not h1.active and not h2.active
    assert feed.channels == {}


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_cancelled_sole_subscriber_does_not_leak_channel(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    task = asyncio.create_task(manager.subscribe({"offers"}, lambda _e: None))
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await _settle()

    assert feed.opened == [frozenset({"offers"})]
    assert feed.closed == [frozenset({"offers"})]
    assert manager.channel_count == 0


@pytest.mark.asyncio
async def test_cancelled_subscriber_keeps_channel_for_concurrent_one(feed: FakeFeed) -> None:
    manager = SubscriptionManager(feed)
    received: list[ChangeEvent] = []
    cancelled = asyncio.create_task(manager.subscribe({"offers"}, lambda _e: None))
    surviving = asyncio.create_task(manager.subscribe({"offers"}, received.append))
    await asyncio.sleep(0)

    cancelled.cancel()
    handle = await surviving
    await _settle()

    assert cancelled.cancelled()
    assert handle.state == ChannelState.CONNECTED
    assert feed.closed == []
    feed.emit(RowInserted(table="offers", new_row=offer("O1")))
    assert len(received) == 1
