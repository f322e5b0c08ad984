"""Local write intents and transient UI-state cleanup.

Writes never touch a watched collection: membership changes arrive through
the change feed echo and the reconciler's refetch. What a write does clean up
is per-row UI state with no server-side representation (expanded detail
panels, cached child rows), which would otherwise leak.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crmsync._transport import Store
from crmsync.exceptions import CrmError
from crmsync.models._base import CrmRow

_logger = logging.getLogger(__name__)

_IMMUTABLE_COLUMNS = frozenset({"id"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MutationKind(StrEnum):
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"
    HARD_DELETE = "hard_delete"
    UPDATE = "update"


class MutationIntent(BaseModel):
    """A single user-issued write, alive only for the duration of the call."""

    model_config = ConfigDict(frozen=True)

    table: str
    target_id: str
    kind: MutationKind
    issued_at: datetime = Field(default_factory=_utcnow)


def _without(mapping: Mapping[str, Any], key: str) -> MappingProxyType[str, Any]:
    return MappingProxyType({k: v for k, v in mapping.items() if k != key})


def _with(mapping: Mapping[str, Any], key: str, value: Any) -> MappingProxyType[str, Any]:
    return MappingProxyType({**mapping, key: value})


class TransientUiState:
    """Session-local per-row UI state.

    Every map is a read-only view that is replaced wholesale on each change
    (copy-on-write), so a reader holding a reference never observes a
    half-applied update.
    """

    def __init__(self) -> None:
        self._expanded: MappingProxyType[str, bool] = MappingProxyType({})
        self._child_rows: MappingProxyType[str, tuple[CrmRow, ...]] = MappingProxyType({})
        self._children_loading: MappingProxyType[str, bool] = MappingProxyType({})

    @property
    def expanded(self) -> Mapping[str, bool]:
        return self._expanded

    @property
    def child_rows(self) -> Mapping[str, tuple[CrmRow, ...]]:
        return self._child_rows

    @property
    def children_loading(self) -> Mapping[str, bool]:
        return self._children_loading

    def is_expanded(self, row_id: str) -> bool:
        return self._expanded.get(row_id, False)

    def toggle_expanded(self, row_id: str) -> bool:
        """Flip the expanded flag and return the new value."""
        if self.is_expanded(row_id):
            self._expanded = _without(self._expanded, row_id)
            return False
        self._expanded = _with(self._expanded, row_id, True)
        return True

    def children(self, row_id: str) -> tuple[CrmRow, ...]:
        return self._child_rows.get(row_id, ())

    def set_children(self, row_id: str, rows: Sequence[CrmRow]) -> None:
        self._child_rows = _with(self._child_rows, row_id, tuple(rows))
        self._children_loading = _without(self._children_loading, row_id)

    def set_children_loading(self, row_id: str, loading: bool = True) -> None:
        if loading:
            self._children_loading = _with(self._children_loading, row_id, True)
        else:
            self._children_loading = _without(self._children_loading, row_id)

    def discard(self, row_id: str) -> None:
        """Drop every entry keyed by *row_id*; absent keys are a no-op."""
        if row_id in self._expanded:
            self._expanded = _without(self._expanded, row_id)
        if row_id in self._child_rows:
            self._child_rows = _without(self._child_rows, row_id)
        if row_id in self._children_loading:
            self._children_loading = _without(self._children_loading, row_id)


class MutationCoordinator:
    """Issues writes for one table.

    Each public method performs exactly one store call, applies no optimistic
    update, and re-raises store errors unchanged.
    """

    def __init__(
        self,
        store: Store,
        table: str,
        ui_state: TransientUiState | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._table = table
        self._ui_state = ui_state if ui_state is not None else TransientUiState()
        self._clock = clock

    @property
    def table(self) -> str:
        return self._table

    @property
    def ui_state(self) -> TransientUiState:
        return self._ui_state

    async def soft_delete(self, row_id: str) -> bool:
        """Mark the row deleted by setting ``deleted_at``."""
        intent = self._intent(row_id, MutationKind.SOFT_DELETE)
        await self._write(intent, self._store.update(self._table, row_id, {"deleted_at": intent.issued_at.isoformat()}))
        self._ui_state.discard(row_id)
        return True

    async def restore(self, row_id: str) -> bool:
        """Clear ``deleted_at`` on a soft-deleted row."""
        intent = self._intent(row_id, MutationKind.RESTORE)
        await self._write(intent, self._store.update(self._table, row_id, {"deleted_at": None}))
        return True

    async def hard_delete(self, row_id: str) -> bool:
        """Remove the row from storage."""
        intent = self._intent(row_id, MutationKind.HARD_DELETE)
        await self._write(intent, self._store.delete(self._table, row_id))
        self._ui_state.discard(row_id)
        return True

    async def update(self, row_id: str, patch: Mapping[str, Any]) -> bool:
        """Apply *patch* to the row."""
        forbidden = _IMMUTABLE_COLUMNS.intersection(patch)
        if forbidden:
            raise ValueError(f"Cannot update immutable column(s): {sorted(forbidden)}")
        intent = self._intent(row_id, MutationKind.UPDATE)
        await self._write(intent, self._store.update(self._table, row_id, dict(patch)))
        return True

    def _intent(self, row_id: str, kind: MutationKind) -> MutationIntent:
        return MutationIntent(table=self._table, target_id=row_id, kind=kind, issued_at=self._clock())

    async def _write(self, intent: MutationIntent, call: Any) -> Any:
        _logger.debug("Mutation %s %s %s", intent.kind, intent.table, intent.target_id)
        try:
            return await call
        except CrmError as exc:
            _logger.warning("Mutation %s of %s %s failed: %s", intent.kind, intent.table, intent.target_id, exc)
            raise
