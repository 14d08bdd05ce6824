import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import typer
from aiohttp import web
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..adapters.manifest_jsonl import JSONLManifest
from ..application.metric_service import MetricResult
from ..application.planning import merge_intervals
from ..bootstrap import CIRCULATING_SUPPLY, LOTTERY_STATS, TOTAL_SUPPLY, TVL_CHART, Runtime, build_runtime
from ..config import Settings
from ..domain.models import BlockRange, EventFilter
from ..domain.units import TOKEN_DECIMALS, format_units
from ..domain.value_types import Address, Topic0
from .http import create_app
from .logging import configure_logging

app = typer.Typer(help="chainmetrics: resilient on-chain metrics behind a small HTTP/WebSocket API.")
console = Console()


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


@app.callback()
def main(
    env_file: str = typer.Option(".env", help="dotenv file loaded before reading settings"),
    log_level: Optional[str] = typer.Option(None, help="overrides LOG_LEVEL"),
):
    load_dotenv(env_file, override=False)
    configure_logging(log_level or _settings().log_level)


def _with_runtime(fn: Callable[[Runtime], Awaitable[Any]], settings: Settings | None = None) -> Any:
    async def run():
        rt = build_runtime(settings or _settings())
        try:
            return await fn(rt)
        finally:
            await rt.aclose()
    return asyncio.run(run())


def _summary(res: MetricResult) -> str:
    if res.error is not None:
        return f"[red]{res.source}[/]: {res.error}"
    return f"[green]{res.source}[/]"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="overrides HOST"),
    port: Optional[int] = typer.Option(None, help="overrides PORT"),
):
    """Run the HTTP + WebSocket server with its auto-refresh timers."""
    settings = _settings()
    host = host or settings.host
    port = port or settings.port

    async def run(rt: Runtime) -> None:
        webapp = create_app(rt.service, rt.broadcaster, schedules=rt.schedules)
        runner = web.AppRunner(webapp)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        console.print(Panel.fit(
            f"listening on http://{host}:{port}\n"
            f"endpoints: {len(rt.pool)} RPC • websocket: /ws",
            title="chainmetrics",
        ))
        try:
            await asyncio.Future()
        finally:
            await runner.cleanup()

    try:
        _with_runtime(run, settings)
    except KeyboardInterrupt:
        console.print("[bold]shutdown[/]")


@app.command()
def stats():
    """Compute lottery statistics once and print them."""
    res = _with_runtime(lambda rt: rt.service.refresh(LOTTERY_STATS))
    body = res.value.to_dict()
    table = Table(title="lottery", show_header=False)
    for k in ("totalTicketsSold", "totalPrizesDistributed", "totalBurned", "biggestWin", "partial"):
        table.add_row(k, str(body[k]))
    table.add_row("skippedEvents", str(res.value.skipped_events))
    console.print(table)
    console.print(_summary(res))


@app.command()
def tvl():
    """Compute the TVL chart once and print it."""
    res = _with_runtime(lambda rt: rt.service.refresh(TVL_CHART))
    body = res.value.to_dict()
    table = Table(title=f"tvl • current ${body['currentTVL']}")
    table.add_column("day")
    table.add_column("tvl (USD)", justify="right")
    table.add_column("timestamp", justify="right")
    for p in body["data"]:
        table.add_row(p["day"], f"{p['tvl']:,.2f}", str(p["timestamp"]))
    console.print(table)
    console.print(_summary(res) + (" [yellow](partial)[/]" if body["partial"] else ""))


@app.command()
def supply():
    """Read total and circulating token supply."""
    async def run(rt: Runtime) -> list[MetricResult]:
        return [await rt.service.get(TOTAL_SUPPLY), await rt.service.get(CIRCULATING_SUPPLY)]

    table = Table(title="supply")
    table.add_column("metric")
    table.add_column("base units", justify="right")
    table.add_column("tokens", justify="right")
    table.add_column("source")
    for res in _with_runtime(run):
        table.add_row(res.key, str(res.value), format_units(res.value, TOKEN_DECIMALS), _summary(res))
    console.print(table)


@app.command()
def logs(
    address: str,
    topic0: list[str],
    start_block: int = typer.Option(..., "--from-block"),
    end_block: int = typer.Option(..., "--to-block"),
    max_range_size: Optional[int] = typer.Option(None, help="blocks per batch (default MAX_RANGE_SIZE)"),
    budget_s: Optional[float] = typer.Option(None, help="give up after this many seconds"),
    manifest: str = typer.Option("", help="JSONL manifest path, one record per range touched"),
):
    """Fetch raw logs for a contract and topic0 set through the range query engine."""
    try:
        rng = BlockRange(start_block, end_block)
        flt = EventFilter(address=Address(address), topic0s=tuple(Topic0(t) for t in topic0))
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    async def run(rt: Runtime):
        if manifest:
            rt.engine.manifest = JSONLManifest(manifest)
        deadline = rt.engine.deadline_in(budget_s) if budget_s else None
        return await rt.engine.query(flt, rng, max_range_size=max_range_size, deadline=deadline)

    t0 = time.time()
    res = _with_runtime(run)
    elapsed = time.time() - t0

    counts: dict[str, int] = {}
    for c in res.chunks:
        counts[c.status] = counts.get(c.status, 0) + 1
    console.print(f"[bold]done[/]: {len(res.events)} logs • {elapsed:.2f}s")
    console.print(
        f"[bold]summary[/]: "
        f"[green]done[/]={counts.get('done', 0)}  "
        f"[yellow]split[/]={counts.get('split', 0)}  "
        f"[red]abandoned[/]={counts.get('abandoned', 0)}  "
        f"[red]failed[/]={counts.get('failed', 0)}"
    )
    missing = merge_intervals([(c.from_block, c.to_block) for c in res.chunks
                               if c.status in ("abandoned", "failed")])
    if missing:
        console.print("[bold red]missing ranges[/]: " + ", ".join(f"{a:,}-{b:,}" for a, b in missing))
    if res.partial:
        raise typer.Exit(code=2)


if __name__ == "__main__":
    app()
