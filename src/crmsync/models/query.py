"""Collection query description (filter, sort, search).

A :class:`CollectionQuery` is frozen and hashable so it can identify a
watched collection and be compared cheaply when a fetch completes.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FilterOp(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    IS = "is"


_ORDERING_OPS = frozenset({FilterOp.GT, FilterOp.GTE, FilterOp.LT, FilterOp.LTE})


def _comparable(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Compare numerically when both sides parse as numbers, else as strings."""
    try:
        return float(actual), float(expected)
    except (TypeError, ValueError):
        return str(actual), str(expected)


class RowFilter(BaseModel):
    """A single column predicate, e.g. ``status eq active``."""

    model_config = ConfigDict(frozen=True)

    column: str
    op: FilterOp = FilterOp.EQ
    value: Any = None

    @field_validator("value", mode="before")
    @classmethod
    def _freeze_sequences(cls, value: Any) -> Any:
        if isinstance(value, (list, set, frozenset)):
            return tuple(value)
        return value

    @classmethod
    def create(cls, column: str, value: Any, op: FilterOp | str | None = None) -> RowFilter:
        """Build a filter, picking the operator from the value unless *op* is given.

        Without *op*: ``is`` for None, ``in`` for sequences, ``eq`` otherwise.
        """
        if op is not None:
            return cls(column=column, op=FilterOp(op), value=value)
        if value is None:
            return cls(column=column, op=FilterOp.IS, value=None)
        if isinstance(value, (list, tuple, set, frozenset)):
            return cls(column=column, op=FilterOp.IN, value=tuple(value))
        return cls(column=column, op=FilterOp.EQ, value=value)

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Evaluate the predicate against a raw row mapping.

        Equality is done on string forms so ``1`` and ``"1"`` match, which is
        how the store's URL-encoded filters behave. Ordering operators compare
        numerically when both sides parse as numbers.
        """
        actual = row.get(self.column)
        if self.op == FilterOp.IS:
            return actual is None if self.value is None else actual is self.value
        if actual is None:
            return False
        if self.op == FilterOp.IN:
            return str(actual) in {str(v) for v in self.value or ()}
        if self.op == FilterOp.NEQ:
            return str(actual) != str(self.value)
        if self.op in _ORDERING_OPS:
            if self.value is None:
                return False
            left, right = _comparable(actual, self.value)
            if self.op == FilterOp.GT:
                return left > right
            if self.op == FilterOp.GTE:
                return left >= right
            if self.op == FilterOp.LT:
                return left < right
            return left <= right
        return str(actual) == str(self.value)

    def to_param(self) -> str:
        """Render the PostgREST operator expression (``eq.active``)."""
        if self.op == FilterOp.IS:
            if self.value is None:
                return "is.null"
            return f"is.{str(self.value).lower()}"
        if self.op == FilterOp.IN:
            return "in.(" + ",".join(str(v) for v in self.value or ()) + ")"
        return f"{self.op.value}.{self.value}"


class SortKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str = "created_at"
    descending: bool = True

    def to_param(self) -> str:
        return f"{self.column}.{'desc' if self.descending else 'asc'}"


class SearchTerm(BaseModel):
    """Case-insensitive substring search over one or more columns."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    term: str
    columns: tuple[str, ...] = ("company_name",)

    @field_validator("columns", mode="before")
    @classmethod
    def _non_empty_columns(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = (value,)
        if not value:
            raise ValueError("search needs at least one column")
        return tuple(value)

    def matches(self, row: Mapping[str, Any]) -> bool:
        needle = self.term.lower()
        for column in self.columns:
            candidate = row.get(column)
            if candidate is not None and needle in str(candidate).lower():
                return True
        return False


class CollectionQuery(BaseModel):
    """Everything needed to (re)derive a watched collection from the store."""

    model_config = ConfigDict(frozen=True)

    filters: tuple[RowFilter, ...] = ()
    order: SortKey = Field(default_factory=SortKey)
    search: SearchTerm | None = None
    limit: int | None = None
    include_deleted: bool = False

    @field_validator("filters", mode="before")
    @classmethod
    def _filters_to_tuple(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return tuple(RowFilter.create(column, v) for column, v in value.items())
        if isinstance(value, list):
            return tuple(value)
        return value

    @field_validator("search", mode="before")
    @classmethod
    def _blank_search_is_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            return SearchTerm(term=value) if value.strip() else None
        if isinstance(value, SearchTerm) and not value.term:
            return None
        return value

    @field_validator("limit")
    @classmethod
    def _positive_limit(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("limit must be positive")
        return value

    def effective_filters(self) -> tuple[RowFilter, ...]:
        """Filters including the implicit ``deleted_at is null`` clause."""
        if self.include_deleted:
            return self.filters
        return (*self.filters, RowFilter(column="deleted_at", op=FilterOp.IS, value=None))

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Evaluate filters and search locally (used by in-memory stores)."""
        if not all(f.matches(row) for f in self.effective_filters()):
            return False
        return self.search is None or self.search.matches(row)
