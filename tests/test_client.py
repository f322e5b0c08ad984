from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from conftest import FakeFeed, FakeStore, customer, offer

from crmsync import CrmClient, CrmConfig, CrmError
from crmsync.models.query import CollectionQuery
from crmsync.ratelimit import LIMIT_HEADER
from crmsync.state.events import RowInserted


def _config(**overrides: object) -> CrmConfig:
    return CrmConfig(base_url="https://crm.test", **overrides)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_soft_delete_removes_row_after_echo(store: FakeStore, feed: FakeFeed) -> None:
    store.seed("customers", customer("A"), customer("B"))
    store.on_write = feed.emit

    async with CrmClient(_config(), store=store, feed=feed) as client:
        handle = await client.watch("customers", CollectionQuery())
        await handle.wait_idle()
        client.ui_state("customers").toggle_expanded("A")

        assert await client.mutations("customers").soft_delete("A") is True
        collection = await handle.wait_idle()

        assert collection.ids == ["B"]
        assert client.ui_state("customers").is_expanded("A") is False
        assert client.subscriptions is not None
        assert client.subscriptions.channel_count == 1

    assert feed.closed == [frozenset({"customers"})]


@pytest.mark.asyncio
async def test_restore_brings_row_back(store: FakeStore, feed: FakeFeed) -> None:
    store.seed("offers", offer("O1", deleted_at="2025-01-01T00:00:00+00:00"), offer("O2"))
    store.on_write = feed.emit

    async with CrmClient(_config(), store=store, feed=feed) as client:
        handle = await client.watch("offers", CollectionQuery(filters={"customer_id": "C1"}))
        await handle.wait_idle()
        assert handle.collection.ids == ["O2"]

        await client.mutations("offers").restore("O1")
        await handle.wait_idle()

        assert sorted(handle.collection.ids) == ["O1", "O2"]


@pytest.mark.asyncio
async def test_feed_disabled_fetches_once(store: FakeStore, feed: FakeFeed) -> None:
    store.seed("offers", offer("O1"))

    async with CrmClient(_config(feed_enabled=False), store=store, feed=feed) as client:
        handle = await client.watch("offers")
        await handle.wait_idle()
        store.seed("offers", offer("O2"))
        feed.emit(RowInserted(table="offers", new_row=offer("O2")))
        await handle.wait_idle()

        assert client.subscriptions is None
        assert handle.collection.ids == ["O1"]

        await handle.refresh()
        assert sorted(handle.collection.ids) == ["O1", "O2"]

    assert feed.opened == []


@pytest.mark.asyncio
async def test_mutations_are_cached_per_table(store: FakeStore, feed: FakeFeed) -> None:
    async with CrmClient(_config(), store=store, feed=feed) as client:
        assert client.mutations("offers") is client.mutations("offers")
        assert client.mutations("offers").ui_state is client.ui_state("offers")
        assert client.mutations("customers") is not client.mutations("offers")


@pytest.mark.asyncio
async def test_use_before_enter_raises(store: FakeStore) -> None:
    client = CrmClient(_config(), store=None)

    with pytest.raises(CrmError):
        await client.watch("offers")
    with pytest.raises(CrmError):
        client.mutations("offers")


@pytest.mark.asyncio
async def test_rate_limit_middleware_uses_configured_defaults() -> None:
    client = CrmClient(_config(rate_limit_default=1, rate_limit_window_ms=30_000))

    async def report(_request: web.Request) -> web.Response:
        return web.Response(text="ok")

    app = web.Application(middlewares=[client.rate_limit_middleware()])
    app.router.add_post("/reports", report)

    async with TestClient(TestServer(app)) as http:
        first = await http.post("/reports")
        second = await http.post("/reports")

    assert first.status == 200
    assert first.headers[LIMIT_HEADER] == "1"
    assert second.status == 429
    assert second.headers["Retry-After"] == "30"
    assert client.rate_limiter.bucket_count == 1
