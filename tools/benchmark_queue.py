#!/usr/bin/env -S uv run
"""
Queue Benchmark Tool for zsq

Measures send / receive / pop / delete throughput and latency against the
in-memory store or a live Redis server (Lua scripts or WATCH/MULTI).

Usage:
    uv run tools/benchmark_queue.py
    uv run tools/benchmark_queue.py --stores memory,redis-lua,redis-watch
    uv run tools/benchmark_queue.py --redis-url redis://localhost:6379/15 -n 5000
    uv run tools/benchmark_queue.py --help
"""
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "zsq",
#     "typer>=0.9.0",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import asyncio
import statistics
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from time import perf_counter

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from zsq import InMemoryStore, MessageQueue, RedisStore, StoreError
from zsq.ports.store import QueueStorePort

app = typer.Typer(
    help="Benchmark zsq queue operations",
    add_completion=False,
)
console = Console()

STORES = ("memory", "redis-lua", "redis-watch")


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkConfig:
    operations: int = 1000
    concurrency: int = 20
    payload_size: int = 1000
    stores: list[str] = field(default_factory=lambda: ["memory"])
    redis_url: str = "redis://localhost:6379/15"


@dataclass
class BenchmarkResult:
    """Latencies of one operation against one store."""

    store_name: str
    operation: str
    total_time: float
    latencies: list[float]  # seconds

    @property
    def total_ops(self) -> int:
        return len(self.latencies)

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, q: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0

    @property
    def max_latency(self) -> float:
        return max(self.latencies, default=0.0)


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    elif ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Core Benchmark Functions
# ---------------------------------------------------------------------------


async def timed(
    n: int,
    concurrency: int,
    op: Callable[[], Awaitable[object]],
) -> tuple[float, list[float]]:
    """
    Run ``op`` n times, at most ``concurrency`` at once.

    Returns
    -------
    (wall time, per-call latencies) in seconds
    """
    latencies: list[float] = []

    async def one() -> None:
        start = perf_counter()
        await op()
        latencies.append(perf_counter() - start)

    started = perf_counter()
    for i in range(0, n, concurrency):
        await asyncio.gather(*(one() for _ in range(min(concurrency, n - i))))
    return perf_counter() - started, latencies


def create_store(store_name: str, config: BenchmarkConfig) -> QueueStorePort:
    if store_name == "memory":
        return InMemoryStore()
    elif store_name in ("redis-lua", "redis-watch"):
        return RedisStore(
            url=config.redis_url,
            namespace=f"zsq-bench-{uuid.uuid4().hex[:8]}",
            scripting=store_name == "redis-lua",
        )
    raise typer.BadParameter(f"unknown store {store_name!r}, pick from {STORES}")


async def run_store_benchmark(
    store_name: str, config: BenchmarkConfig
) -> list[BenchmarkResult]:
    results: list[BenchmarkResult] = []
    body = "x" * config.payload_size
    n, c = config.operations, config.concurrency

    async with MessageQueue(create_store(store_name, config)) as q:
        await q.create_queue("bench", vt=60)
        try:
            ids: list[str] = []

            async def send() -> None:
                ids.append(await q.send_message("bench", body))

            elapsed, latencies = await timed(n, c, send)
            results.append(BenchmarkResult(store_name, "send", elapsed, latencies))

            received: list[str] = []

            async def receive() -> None:
                message = await q.receive_message("bench")
                if message is not None:
                    received.append(message.id)

            elapsed, latencies = await timed(n, c, receive)
            results.append(BenchmarkResult(store_name, "receive", elapsed, latencies))

            pending = iter(received)

            async def delete() -> None:
                await q.delete_message("bench", next(pending))

            elapsed, latencies = await timed(len(received), c, delete)
            results.append(BenchmarkResult(store_name, "delete", elapsed, latencies))

            for _ in range(n):
                await q.send_message("bench", body)

            async def pop() -> None:
                await q.pop_message("bench")

            elapsed, latencies = await timed(n, c, pop)
            results.append(BenchmarkResult(store_name, "pop", elapsed, latencies))
        finally:
            await q.delete_queue("bench")

    return results


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def print_results(results: list[BenchmarkResult], config: BenchmarkConfig) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold cyan]zsq benchmark[/bold cyan]  "
            f"{config.operations} ops, concurrency {config.concurrency}, "
            f"{config.payload_size}B bodies",
            expand=False,
        )
    )

    by_store: dict[str, list[BenchmarkResult]] = {}
    for result in results:
        by_store.setdefault(result.store_name, []).append(result)

    for store_name, store_results in by_store.items():
        console.print()
        console.print(f"[bold yellow]Store: {store_name}[/bold yellow]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Operation", style="cyan", width=10)
        table.add_column("Ops", justify="right")
        table.add_column("Ops/sec", justify="right", style="green")
        table.add_column("P50", justify="right")
        table.add_column("P95", justify="right")
        table.add_column("P99", justify="right")
        table.add_column("Max", justify="right")

        for result in store_results:
            table.add_row(
                result.operation,
                str(result.total_ops),
                f"{result.ops_per_sec:.1f}",
                format_latency_ms(result.p50),
                format_latency_ms(result.percentile(0.95)),
                format_latency_ms(result.percentile(0.99)),
                format_latency_ms(result.max_latency),
            )

        console.print(table)

    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    operations: int = typer.Option(
        1000, "--operations", "-n", help="Messages per benchmark"
    ),
    concurrency: int = typer.Option(
        20, "--concurrency", "-c", help="Concurrent calls in flight"
    ),
    payload_size: int = typer.Option(
        1000, "--payload-size", "-p", help="Message body size in characters"
    ),
    stores: str = typer.Option(
        "memory", "--stores", "-s", help=f"Comma-separated, from {', '.join(STORES)}"
    ),
    redis_url: str = typer.Option(
        "redis://localhost:6379/15", "--redis-url", help="Redis server for redis-*"
    ),
) -> None:
    """
    Benchmark zsq send / receive / delete / pop.

    Each Redis run uses a throwaway namespace and deletes its queue when done.
    """
    config = BenchmarkConfig(
        operations=operations,
        concurrency=concurrency,
        payload_size=payload_size,
        stores=[s.strip() for s in stores.split(",") if s.strip()],
        redis_url=redis_url,
    )

    all_results: list[BenchmarkResult] = []
    for store_name in config.stores:
        try:
            all_results.extend(asyncio.run(run_store_benchmark(store_name, config)))
        except StoreError as exc:
            console.print(f"[red]Error benchmarking {store_name}: {exc}[/red]")

    if not all_results:
        console.print("[red]No benchmark results to display.[/red]")
        raise typer.Exit(code=1)
    print_results(all_results, config)


if __name__ == "__main__":
    app()
