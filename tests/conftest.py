from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from crmsync.exceptions import CrmTransportError, CrmWriteError
from crmsync.feed.manager import ChannelState, EventCallback, StatusCallback
from crmsync.models.query import CollectionQuery
from crmsync.state.events import ChangeEvent, RowDeleted, RowUpdated


@dataclass
class FakeStore:
    """In-memory store with optional manual control over list completion.

    With ``hold_lists`` set, every ``list`` call parks on a future appended to
    ``pending``; tests resolve them in whatever order they need.
    """

    tables: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    list_calls: list[tuple[str, CollectionQuery]] = field(default_factory=list)
    update_calls: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    delete_calls: list[tuple[str, str]] = field(default_factory=list)
    hold_lists: bool = False
    pending: list[asyncio.Future[list[dict[str, Any]]]] = field(default_factory=list)
    list_error: Exception | None = None
    write_errors: dict[str, Exception] = field(default_factory=dict)
    on_write: Callable[[ChangeEvent], None] | None = None

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        bucket = self.tables.setdefault(table, {})
        for row in rows:
            bucket[str(row["id"])] = dict(row)

    def snapshot(self, table: str, query: CollectionQuery) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(r) for r in self.tables.get(table, {}).values() if query.matches(r)]
        rows.sort(key=lambda r: str(r.get(query.order.column) or ""), reverse=query.order.descending)
        if query.limit is not None:
            rows = rows[: query.limit]
        return rows

    async def list(self, table: str, query: CollectionQuery) -> list[dict[str, Any]]:
        self.list_calls.append((table, query))
        if self.hold_lists:
            future: asyncio.Future[list[dict[str, Any]]] = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            return await future
        await asyncio.sleep(0)
        if self.list_error is not None:
            raise self.list_error
        return self.snapshot(table, query)

    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        self.update_calls.append((table, row_id, dict(patch)))
        await asyncio.sleep(0)
        if row_id in self.write_errors:
            raise self.write_errors[row_id]
        current = self.tables.get(table, {}).get(row_id)
        if current is None:
            raise CrmWriteError(f"{table} {row_id} not found", table=table, row_id=row_id, status_code=404)
        previous = dict(current)
        current.update(patch)
        if self.on_write is not None:
            self.on_write(RowUpdated(table=table, previous_row=previous, new_row=dict(current)))
        return dict(current)

    async def delete(self, table: str, row_id: str) -> None:
        self.delete_calls.append((table, row_id))
        await asyncio.sleep(0)
        if row_id in self.write_errors:
            raise self.write_errors[row_id]
        previous = self.tables.get(table, {}).pop(row_id, None)
        if previous is not None and self.on_write is not None:
            self.on_write(RowDeleted(table=table, previous_row=previous))


@dataclass
class FakeFeed:
    """Change feed that delivers synchronously on the calling thread."""

    channels: dict[int, tuple[frozenset[str], EventCallback, StatusCallback]] = field(default_factory=dict)
    opened: list[frozenset[str]] = field(default_factory=list)
    closed: list[frozenset[str]] = field(default_factory=list)
    fail_open: bool = False
    _ids: itertools.count = field(default_factory=itertools.count)

    async def open(self, key: frozenset[str], deliver: EventCallback, on_status: StatusCallback) -> int:
        await asyncio.sleep(0)
        if self.fail_open:
            raise CrmTransportError(f"cannot open {sorted(key)}")
        token = next(self._ids)
        self.channels[token] = (key, deliver, on_status)
        self.opened.append(key)
        return token

    async def close(self, token: int) -> None:
        key, _deliver, _status = self.channels.pop(token)
        self.closed.append(key)

    def emit(self, event: ChangeEvent) -> None:
        for key, deliver, _status in list(self.channels.values()):
            if event.table in key:
                deliver(event)

    def drop(self, message: str = "connection lost") -> None:
        for _key, _deliver, on_status in list(self.channels.values()):
            on_status(ChannelState.DISCONNECTED, CrmTransportError(message))

    def reconnect(self) -> None:
        for _key, _deliver, on_status in list(self.channels.values()):
            on_status(ChannelState.CONNECTED, None)


def customer(row_id: str, **fields: Any) -> dict[str, Any]:
    row: dict[str, Any] = {"id": row_id, "company_name": f"Company {row_id}", "deleted_at": None}
    row.update(fields)
    return row


def offer(row_id: str, **fields: Any) -> dict[str, Any]:
    row: dict[str, Any] = {"id": row_id, "customer_id": "C1", "status": "active", "deleted_at": None}
    row.update(fields)
    return row


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()
