#!/usr/bin/env python3
"""Watch a CRM table and print the collection every time it is republished.

Reads connection settings from ``CRM_*`` environment variables (see
``CrmConfig.from_env``). Use this to check that change-feed notifications
reach the client and that refetches converge on the store's state.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from crmsync import CollectionQuery, CrmClient, CrmConfig, CrmError  # noqa: E402
from crmsync.state.collection import WatchedCollection  # noqa: E402


@dataclass
class WatchStats:
    started_at: float
    publishes: int = 0
    failures: int = 0


def _parse_filter(text: str) -> tuple[str, str]:
    column, sep, value = text.partition("=")
    if not sep or not column:
        raise argparse.ArgumentTypeError(f"expected COLUMN=VALUE, got {text!r}")
    return column, value


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch a CRM table through the change feed.",
    )
    parser.add_argument("table", help="Table to watch, e.g. offers or customers.")
    parser.add_argument(
        "--filter",
        dest="filters",
        action="append",
        type=_parse_filter,
        default=[],
        help="Equality filter COLUMN=VALUE (repeatable).",
    )
    parser.add_argument("--search", default=None, help="Case-insensitive search term.")
    parser.add_argument("--order", default="created_at", help="Sort column.")
    parser.add_argument("--ascending", action="store_true", help="Sort ascending.")
    parser.add_argument("--limit", type=int, default=None, help="Maximum rows per fetch.")
    parser.add_argument(
        "--include-deleted",
        action="store_true",
        help="Also show soft-deleted rows.",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print each row as JSON instead of one id per line.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _print_collection(collection: WatchedCollection, stats: WatchStats, *, as_json: bool) -> None:
    stats.publishes += 1
    if collection.error is not None:
        stats.failures += 1
    ts_text = time.strftime("%Y-%m-%d %H:%M:%S")
    print(
        f"[watch] {ts_text} {collection.table} seq={collection.applied_sequence}/{collection.request_sequence} "
        f"rows={len(collection.rows)} stale={collection.is_stale} loading={collection.is_loading}"
        + (f" error={collection.error}" if collection.error is not None else ""),
    )
    if collection.quarantined:
        print(f"[watch]   quarantined={len(collection.quarantined)}")
    for row in collection.rows:
        if as_json:
            print(json.dumps(row.model_dump(mode="json", exclude={"raw"}), ensure_ascii=False, sort_keys=True))
        else:
            print(f"[watch]   {row.id}")


def _print_summary(stats: WatchStats) -> None:
    runtime = time.time() - stats.started_at
    print("[watch] Summary")
    print(f"[watch]   runtime_s : {runtime:.1f}")
    print(f"[watch]   publishes : {stats.publishes}")
    print(f"[watch]   failures  : {stats.failures}")


async def _watch(args: argparse.Namespace, stats: WatchStats) -> None:
    query = CollectionQuery(
        filters=dict(args.filters),
        order={"column": args.order, "descending": not args.ascending},
        search=args.search,
        limit=args.limit,
        include_deleted=args.include_deleted,
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async with CrmClient(CrmConfig.from_env()) as client:
        handle = await client.watch(args.table, query)
        handle.add_listener(lambda c: _print_collection(c, stats, as_json=args.json))
        await handle.wait_idle()

        timeout = args.duration if args.duration > 0 else None
        try:
            await asyncio.wait_for(stop.wait(), timeout=timeout)
        except TimeoutError:
            print(f"[watch] Reached --duration={args.duration}s, stopping.")
        await handle.unwatch()


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    stats = WatchStats(started_at=time.time())
    try:
        asyncio.run(_watch(args, stats))
    except CrmError as exc:
        print(f"[watch] Failed: {exc}", file=sys.stderr)
        return 2

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
