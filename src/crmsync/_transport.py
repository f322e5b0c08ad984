"""PostgREST-style HTTP store adapter."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from crmsync._redact import redact_for_log
from crmsync.config import CrmConfig
from crmsync.exceptions import CrmTransportError, CrmWriteError
from crmsync.models.query import CollectionQuery

_logger = logging.getLogger(__name__)

USER_AGENT = "crmsync"


class Store(Protocol):
    """Structural store interface consumed by the reconciler and mutations.

    Having a protocol here makes it easy to pass in-memory test doubles while
    keeping the production implementation (`HttpStore`) concrete.
    """

    async def list(self, table: str, query: CollectionQuery) -> list[dict[str, Any]]: ...

    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> dict[str, Any]: ...

    async def delete(self, table: str, row_id: str) -> None: ...


def build_list_params(query: CollectionQuery) -> list[tuple[str, str]]:
    """Render *query* as PostgREST query-string parameters."""
    params: list[tuple[str, str]] = [("select", "*")]
    for row_filter in query.effective_filters():
        params.append((row_filter.column, row_filter.to_param()))
    if query.search is not None:
        pattern = f"*{query.search.term}*"
        if len(query.search.columns) == 1:
            params.append((query.search.columns[0], f"ilike.{pattern}"))
        else:
            clauses = ",".join(f"{column}.ilike.{pattern}" for column in query.search.columns)
            params.append(("or", f"({clauses})"))
    params.append(("order", query.order.to_param()))
    if query.limit is not None:
        params.append(("limit", str(query.limit)))
    return params


def _store_message(text: str) -> str:
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        return text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return text[:200]


class HttpStore:
    """Store backed by a PostgREST endpoint (``{base_url}/rest/v1/{table}``)."""

    def __init__(self, config: CrmConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _url(self, table: str) -> str:
        return f"{self._config.base_url.rstrip('/')}/rest/v1/{table}"

    def _headers(self, *, write: bool = False) -> dict[str, str]:
        headers = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
            "accept-profile": self._config.schema,
        }
        if self._config.api_key:
            headers["apikey"] = self._config.api_key
            headers["authorization"] = f"Bearer {self._config.api_key}"
        if write:
            headers["content-type"] = "application/json"
            headers["content-profile"] = self._config.schema
            headers["prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        body: Mapping[str, Any] | None = None,
    ) -> tuple[int, str]:
        url = self._url(table)
        if self._config.api_trace_enabled:
            _logger.debug("%s %s params=%s body=%s", method, url, params, redact_for_log(body))
        else:
            _logger.debug("%s %s", method, url)
        try:
            async with self._http.request(
                method,
                url,
                params=params,
                data=json.dumps(body) if body is not None else None,
                headers=self._headers(write=body is not None or method == "DELETE"),
            ) as resp:
                return resp.status, await resp.text()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise CrmTransportError(f"{method} {table} failed: {exc!r}", endpoint=url) from exc

    async def list(self, table: str, query: CollectionQuery) -> list[dict[str, Any]]:
        status, text = await self._request("GET", table, params=build_list_params(query))
        if status != 200:
            raise CrmTransportError(
                f"HTTP {status} listing {table}: {_store_message(text)}",
                status_code=status,
                endpoint=self._url(table),
            )
        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CrmTransportError(f"Invalid JSON listing {table}: {text[:200]}", endpoint=self._url(table)) from exc
        if not isinstance(body, list):
            raise CrmTransportError(f"Listing {table} did not return an array", endpoint=self._url(table))
        if self._config.api_trace_enabled:
            _logger.debug("GET %s returned %s rows: %s", table, len(body), redact_for_log(body))
        return [row for row in body if isinstance(row, dict)]

    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        status, text = await self._request("PATCH", table, params=[("id", f"eq.{row_id}")], body=dict(patch))
        if status >= 400:
            raise CrmWriteError(
                f"Update of {table} {row_id} rejected (HTTP {status}): {_store_message(text)}",
                table=table,
                row_id=row_id,
                status_code=status,
            )
        try:
            body = json.loads(text) if text else []
        except json.JSONDecodeError as exc:
            raise CrmTransportError(f"Invalid JSON updating {table}: {text[:200]}", endpoint=self._url(table)) from exc
        if not body:
            raise CrmWriteError(f"{table} {row_id} not found", table=table, row_id=row_id, status_code=status)
        row = body[0] if isinstance(body, list) else body
        return row if isinstance(row, dict) else {}

    async def delete(self, table: str, row_id: str) -> None:
        status, text = await self._request("DELETE", table, params=[("id", f"eq.{row_id}")])
        if status >= 400:
            raise CrmWriteError(
                f"Delete of {table} {row_id} rejected (HTTP {status}): {_store_message(text)}",
                table=table,
                row_id=row_id,
                status_code=status,
            )
