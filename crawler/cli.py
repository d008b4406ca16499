"""Command line entry point for the crawler."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Awaitable, Callable, TypeVar

from rich import box
from rich.console import Console
from rich.table import Table

from mongo import CrawlStore
from observability.logging import configure_logging
from settings import get_settings

from . import worker as worker_module
from .admission import add_source
from .supervisor import run_pool
from .worker import WORKER_KINDS

T = TypeVar("T")


def _with_store(action: Callable[[CrawlStore], Awaitable[T]]) -> T:
    async def _run() -> T:
        store = CrawlStore.connect(get_settings().mongo)
        try:
            return await action(store)
        finally:
            await store.close()

    return asyncio.run(_run())


def render_queue_table(stats: dict[str, int]) -> Table:
    table = Table(title="Queue", box=box.SIMPLE_HEAVY)
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for key in ("total", "pending", "processing", "done", "failed"):
        table.add_row(key, str(stats.get(key, 0)))
    return table


def render_sources_table(stats: dict[str, dict[str, int]]) -> Table:
    table = Table(title="Sources", box=box.SIMPLE_HEAVY)
    table.add_column("Source URL", overflow="fold")
    for column in ("pending", "processing", "done", "failed", "total"):
        table.add_column(column.capitalize(), justify="right")
    for url, counts in sorted(stats.items()):
        table.add_row(
            url,
            *(str(counts.get(column, 0)) for column in ("pending", "processing", "done", "failed", "total")),
        )
    return table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crawler", description="Distributed article crawler")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Start the supervised worker pool")

    worker = sub.add_parser("worker", help="Run a single worker process")
    worker.add_argument("--kind", choices=WORKER_KINDS, default="fetch")
    worker.add_argument("--index", type=int, default=0)

    add = sub.add_parser("add", help="Register a source and queue its first page")
    add.add_argument("url")
    add.add_argument("selectors", help="Comma-separated CSS selectors, e.g. 'article,.post-body'")
    add.add_argument("--category", default=None)

    sub.add_parser("requeue", help="Put jobs stuck in processing back to pending")
    sub.add_parser("stats", help="Print queue and per-source counters")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "worker":
        return worker_module.main(args.kind, args.index)

    configure_logging(settings.logging.level, settings.logging.file, settings.logging.error_file)

    if args.command == "run":
        run_pool(settings)
        return 0

    console = Console()
    if args.command == "add":
        selectors = [part.strip() for part in args.selectors.split(",") if part.strip()]
        if not selectors:
            console.print("[red]At least one CSS selector is required.[/red]")
            return 2
        try:
            result = _with_store(
                lambda store: add_source(store, args.url, selectors, category=args.category)
            )
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            return 2
        state = "queued" if result.job_created else "already queued"
        console.print(f"{result.url}: {state}")
        return 0

    if args.command == "requeue":
        count = _with_store(lambda store: store.requeue_stuck_jobs())
        console.print(f"Re-queued {count} stuck jobs.")
        return 0

    if args.command == "stats":
        async def _stats(store: CrawlStore):
            return await store.queue_stats(), await store.source_stats()

        queue_stats, source_stats = _with_store(_stats)
        console.print(render_queue_table(queue_stats))
        if source_stats:
            console.print(render_sources_table(source_stats))
        else:
            console.print("No sources found.")
        return 0

    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
