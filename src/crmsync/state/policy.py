"""Deterministic reconciliation policy.

This module intentionally contains no I/O. It decides which fetch results may
be shown and which events are routed to which subscriber.
"""

from __future__ import annotations

from collections.abc import Iterable

from crmsync.models.query import CollectionQuery, RowFilter
from crmsync.state.events import ChangeEvent, ChangeOperation


def should_apply_result(
    *,
    result_sequence: int,
    applied_sequence: int,
    result_query: CollectionQuery,
    current_query: CollectionQuery,
) -> bool:
    """Decide whether a completed fetch may replace the visible rows.

    Policy (last-issued-wins):
    - a result older than or equal to the one already shown is discarded
    - a result issued under a query that has since been replaced is discarded
    """
    if result_sequence <= applied_sequence:
        return False
    return result_query == current_query


def event_matches(
    event: ChangeEvent,
    *,
    operations: Iterable[ChangeOperation],
    filters: tuple[RowFilter, ...],
) -> bool:
    """Whether *event* should reach a subscriber with these constraints.

    An update matches when either side of the change satisfies the filters,
    so a row leaving a filtered set is still reported.
    """
    if event.operation not in operations:
        return False
    if not filters:
        return True
    return any(all(f.matches(row) for f in filters) for row in event.rows() if row)
