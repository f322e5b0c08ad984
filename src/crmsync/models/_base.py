"""Base model for store rows.

Every table record inherits from :class:`CrmRow` which provides:

* a required stable ``id`` (UUIDs and integers are coerced to ``str``)
* a nullable ``deleted_at`` soft-deletion timestamp
* a ``model_validator(mode="before")`` that drops empty-string sentinels so
  the field default is used
* a ``raw`` dict that captures the original payload
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

# Placeholder values the store/UI layer uses for "not set".
_SENTINELS = frozenset({"", "null"})


def parse_store_timestamp(value: Any) -> datetime | None:
    """Convert an ISO-8601 string or epoch number to a UTC datetime.

    Numbers above ``1e11`` are treated as milliseconds.
    """
    if value is None:
        return value
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts > 1e11:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    parsed = datetime.fromisoformat(str(value).strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


StoreTimestamp = Annotated[datetime | None, BeforeValidator(parse_store_timestamp)]
"""Annotated type that coerces store timestamps to aware UTC datetimes."""


class CrmRow(BaseModel):
    """Base for validated table rows."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    id: str
    deleted_at: StoreTimestamp = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
    """Original store payload."""

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None:
            raise ValueError("id is required")
        text = str(value).strip()
        if not text:
            raise ValueError("id must be non-empty")
        return text

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        """Drop sentinel values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            cleaned[key] = value
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
