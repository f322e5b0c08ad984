"""Per-table row schemas and validation at the store boundary."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError, field_validator

from crmsync._redact import redact_for_log
from crmsync.exceptions import CrmValidationError
from crmsync.models._base import CrmRow, StoreTimestamp

_logger = logging.getLogger(__name__)


class Customer(CrmRow):
    """A row of the ``customers`` table."""

    company_name: str
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    telephone: str | None = None
    address: str | None = None
    town: str | None = None
    postal_code: str | None = None
    customer_type: str | None = None
    status: str | None = None
    service_level: str | None = None
    primary_contact_id: str | None = None
    notes: str | None = None
    created_at: StoreTimestamp = None
    updated_at: StoreTimestamp = None


class Offer(CrmRow):
    """A row of the ``offers`` table."""

    customer_id: str
    requirements: str | None = None
    amount: float | None = None
    offer_result: str | None = None
    result: str | None = None
    status: str | None = None
    assigned_to: str | None = None
    source: str | None = None
    contact_id: str | None = None
    customer_comments: str | None = None
    our_comments: str | None = None
    created_at: StoreTimestamp = None
    updated_at: StoreTimestamp = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def _coerce_customer_id(cls, value: Any) -> str:
        if value is None:
            raise ValueError("customer_id is required")
        return str(value)


TABLE_SCHEMAS: dict[str, type[CrmRow]] = {
    "customers": Customer,
    "offers": Offer,
}


def schema_for(table: str) -> type[CrmRow]:
    """Return the row model registered for *table*.

    Unknown tables fall back to :class:`CrmRow`, which only enforces ``id``
    and ``deleted_at``.
    """
    return TABLE_SCHEMAS.get(table, CrmRow)


def validate_row(table: str, payload: Mapping[str, Any]) -> CrmRow:
    """Validate one raw store payload.

    Raises
    ------
    CrmValidationError
        If the payload does not satisfy the table's schema.
    """
    model = schema_for(table)
    try:
        return model.model_validate(dict(payload))
    except ValidationError as exc:
        row_id = payload.get("id")
        raise CrmValidationError(
            f"Invalid {table} row {row_id!r}: {exc.error_count()} error(s)",
            table=table,
            row_id="" if row_id is None else str(row_id),
        ) from exc


def validate_rows(
    table: str,
    payloads: Iterable[Mapping[str, Any]],
) -> tuple[list[CrmRow], list[dict[str, Any]]]:
    """Split raw payloads into valid rows and quarantined payloads.

    Order of valid rows is preserved; quarantined payloads are logged.
    """
    rows: list[CrmRow] = []
    quarantined: list[dict[str, Any]] = []
    for payload in payloads:
        try:
            rows.append(validate_row(table, payload))
        except CrmValidationError as exc:
            _logger.warning("Quarantined %s row id=%s: %s", table, exc.row_id or "?", exc)
            _logger.debug("Quarantined payload=%s", redact_for_log(payload))
            quarantined.append(dict(payload))
    return rows, quarantined
