"""Change-feed events.

Every transport converts its inbound notifications into one of the three
variants below. Events are consumed once and never persisted. Row payloads
are kept as plain dicts: they may be partial or denormalized and are never
rendered directly.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from crmsync.exceptions import CrmValidationError
from crmsync.models._base import parse_store_timestamp


class ChangeOperation(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_OPERATIONS: frozenset[ChangeOperation] = frozenset(ChangeOperation)


class _ChangeEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    delivered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("table")
    @classmethod
    def _normalize_table(cls, value: str) -> str:
        table = value.strip()
        if not table:
            raise ValueError("table must be non-empty")
        return table

    @field_validator("delivered_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class RowInserted(_ChangeEventBase):
    kind: Literal["insert"] = "insert"
    new_row: dict[str, Any]

    @property
    def operation(self) -> ChangeOperation:
        return ChangeOperation.INSERT

    def rows(self) -> tuple[dict[str, Any], ...]:
        return (self.new_row,)


class RowUpdated(_ChangeEventBase):
    kind: Literal["update"] = "update"
    previous_row: dict[str, Any] = Field(default_factory=dict)
    new_row: dict[str, Any]

    @property
    def operation(self) -> ChangeOperation:
        return ChangeOperation.UPDATE

    def rows(self) -> tuple[dict[str, Any], ...]:
        return (self.previous_row, self.new_row)


class RowDeleted(_ChangeEventBase):
    kind: Literal["delete"] = "delete"
    previous_row: dict[str, Any]

    @property
    def operation(self) -> ChangeOperation:
        return ChangeOperation.DELETE

    def rows(self) -> tuple[dict[str, Any], ...]:
        return (self.previous_row,)


ChangeEvent = RowInserted | RowUpdated | RowDeleted


def _commit_timestamp(value: Any) -> datetime | None:
    """Best-effort commit timestamp; unparseable values mean "now"."""
    if value is None or value == "":
        return None
    try:
        return parse_store_timestamp(value)
    except (TypeError, ValueError):
        return None


def parse_change_event(payload: Mapping[str, Any]) -> ChangeEvent:
    """Decode a wire notification into a typed event.

    Expected shape::

        {"table": "offers", "type": "UPDATE", "record": {...},
         "old_record": {...}, "commit_timestamp": "2025-04-14T21:07:49Z"}

    Raises
    ------
    CrmValidationError
        If the operation is unknown or the payload lacks the rows its
        operation requires.
    """
    table = str(payload.get("table") or "")
    op_raw = str(payload.get("type") or payload.get("eventType") or "").upper()
    try:
        operation = ChangeOperation(op_raw)
    except ValueError as exc:
        raise CrmValidationError(f"Unknown change operation {op_raw!r}", table=table) from exc

    new_row = payload.get("record", payload.get("new"))
    old_row = payload.get("old_record", payload.get("old"))

    fields: dict[str, Any] = {"table": table}
    committed = _commit_timestamp(payload.get("commit_timestamp"))
    if committed is not None:
        fields["delivered_at"] = committed

    try:
        if operation == ChangeOperation.INSERT:
            return RowInserted(new_row=new_row, **fields)
        if operation == ChangeOperation.UPDATE:
            return RowUpdated(previous_row=old_row or {}, new_row=new_row, **fields)
        return RowDeleted(previous_row=old_row, **fields)
    except ValidationError as exc:
        raise CrmValidationError(
            f"Malformed {operation.value} event for {table!r}: {exc.error_count()} error(s)",
            table=table,
        ) from exc
