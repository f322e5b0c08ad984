"""Row schemas and query models."""

from crmsync.models._base import CrmRow, StoreTimestamp, parse_store_timestamp
from crmsync.models.query import CollectionQuery, FilterOp, RowFilter, SearchTerm, SortKey
from crmsync.models.rows import TABLE_SCHEMAS, Customer, Offer, schema_for, validate_row, validate_rows

__all__ = [
    "CollectionQuery",
    "CrmRow",
    "Customer",
    "FilterOp",
    "Offer",
    "RowFilter",
    "SearchTerm",
    "SortKey",
    "StoreTimestamp",
    "TABLE_SCHEMAS",
    "parse_store_timestamp",
    "schema_for",
    "validate_row",
    "validate_rows",
]
