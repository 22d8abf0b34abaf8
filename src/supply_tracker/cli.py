"""Click-based CLI for supply-tracker.

Thin wrapper around SupplyService. No business logic here; every command
delegates to the service, which owns the store and the ingestion cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from supply_tracker.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
        _configure_logging(
            "DEBUG" if ctx.obj.get("verbose") else ctx.obj["config"].logging.level
        )
    return ctx.obj["config"]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


async def _create_service(config):
    """Create the service with an initialized store."""
    from supply_tracker.service import SupplyService

    return await SupplyService.create(config)


def _parse_symbols(symbols: str) -> list[str]:
    """Split a comma-separated symbol list into canonical symbols."""
    parsed = [s.strip().upper() for s in symbols.split(",") if s.strip()]
    if not parsed:
        raise click.UsageError("At least one symbol is required")
    return parsed


def _fmt_supply(value: float | None) -> str:
    return "-" if value is None else f"{value:,.0f}"


def _fmt_change(result) -> str:
    if result is None or result.change is None:
        return "-"
    text = f"{result.change:+,d}"
    if result.percent_change is not None:
        text += f" ({result.percent_change:+.2f}%)"
    if result.is_estimated:
        text += " ~"
    return text


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="SUPPLY_TRACKER_CONFIG",
    default=None,
    help="Path to supply-tracker.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.version_option(package_name="supply-tracker")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Supply Tracker: circulating-supply history for ranked crypto assets."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console


# ---------------------------------------------------------------------------
# collect
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Re-run even if today's snapshot exists, replacing it.",
)
@click.option(
    "--every",
    type=click.FloatRange(min=1),
    default=None,
    help="Keep running, one cycle every SECONDS.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="With --every, stop after this many cycles.",
)
@click.pass_context
def collect(ctx: click.Context, force: bool, every: float | None, max_cycles: int | None) -> None:
    """Run one collection cycle (fetch, backfill, persist, snapshot).

    With --every, keep collecting on a fixed interval until interrupted.
    """
    config = _load_config(ctx)
    if every is not None:
        if force:
            raise click.UsageError("--force cannot be combined with --every")
        _collect_on_schedule(config, every, max_cycles)
        return

    async def _run():
        from supply_tracker.core import IngestionError

        service = await _create_service(config)
        try:
            with console.status("Collecting market data..."):
                summary = await service.run_cycle(force=force)
        except IngestionError as exc:
            _fail(f"Collection failed: {exc}")
        finally:
            await service.close()

        if not summary.success:
            _fail(f"Collection failed: {summary.message}")

        table = Table(title=f"Cycle {summary.day} ({summary.state.value})")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Pages fetched", str(summary.pages_fetched))
        table.add_row("Pages failed", str(summary.pages_failed))
        table.add_row("Assets fetched", str(summary.assets_fetched))
        table.add_row(
            "Backfill", f"{summary.backfill_recovered}/{summary.backfill_attempted}"
        )
        table.add_section()
        table.add_row("Written", str(summary.written))
        table.add_row("Already present", str(summary.already_present))
        table.add_row("Corrected", str(summary.corrected))
        table.add_row("Failed", str(len(summary.failed)))
        table.add_row("Snapshot coins", str(summary.snapshot_coins))
        console.print(table)
        console.print(f"[green]✓[/green] {summary.message}")

    _run_async(_run())


def _collect_on_schedule(config, every: float, max_cycles: int | None) -> None:
    def _report(summary) -> None:
        style = "green" if summary.success else "red"
        console.print(
            f"[{style}]{summary.finished_at:%Y-%m-%d %H:%M:%S}[/{style}] "
            f"{summary.state.value}: {summary.message}"
        )

    async def _run():
        service = await _create_service(config)
        try:
            return await service.run_schedule(
                interval_seconds=every, max_cycles=max_cycles, on_summary=_report
            )
        finally:
            await service.close()

    console.print(f"Collecting every {every:g}s (Ctrl+C to stop)")
    try:
        cycles = _run_async(_run())
    except KeyboardInterrupt:
        console.print("Stopped.")
        return
    console.print(f"Finished after {cycles} cycles.")


# ---------------------------------------------------------------------------
# series / bulk / changes / compare
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("symbol")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)
@click.option(
    "--start",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Only observations on or after this UTC day.",
)
@click.option(
    "--end",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Only observations on or before this UTC day.",
)
@click.pass_context
def series(
    ctx: click.Context,
    symbol: str,
    fmt: str,
    start: datetime | None,
    end: datetime | None,
) -> None:
    """Show the supply series of one symbol with 1d/1w/1m readings.

    With --start/--end, list only the observations in that day range.
    """
    config = _load_config(ctx)
    if start is not None or end is not None:
        _series_range(config, symbol, fmt, start, end)
        return

    async def _run():
        from supply_tracker.core import NotFoundError

        service = await _create_service(config)
        try:
            details = await service.supply_details(symbol)
        except NotFoundError as exc:
            _fail(str(exc))
        finally:
            await service.close()

        if fmt == "json":
            click.echo(json.dumps(details.model_dump(mode="json"), indent=2))
            return

        console.print(
            f"[bold]{details.symbol}[/bold]  records: {details.total_records}  "
            f"latest: {_fmt_supply(details.latest_supply)}"
        )
        table = Table(title=f"{details.symbol} supply history")
        table.add_column("Timestamp")
        table.add_column("Circulating supply", justify="right")
        for obs in details.observations:
            table.add_row(obs.timestamp.isoformat(), _fmt_supply(obs.value))
        console.print(table)
        for name, reading in details.readings.items():
            console.print(
                f"  {name:>5}: "
                + (
                    f"{_fmt_supply(reading.value)} @ {reading.timestamp:%Y-%m-%d}"
                    if reading
                    else "-"
                )
            )

    _run_async(_run())


def _series_range(
    config, symbol: str, fmt: str, start: datetime | None, end: datetime | None
) -> None:
    start_at = start.replace(tzinfo=UTC) if start else None
    end_at = end.replace(tzinfo=UTC) + timedelta(days=1, microseconds=-1) if end else None

    async def _run():
        from supply_tracker.core import NotFoundError

        service = await _create_service(config)
        try:
            return await service.latest_series(symbol, start=start_at, end=end_at)
        except (NotFoundError, ValueError) as exc:
            _fail(str(exc))
        finally:
            await service.close()

    found = _run_async(_run())
    if fmt == "json":
        click.echo(json.dumps(found.model_dump(mode="json"), indent=2))
        return

    span = f"{start:%Y-%m-%d}" if start else "..."
    span += f" to {end:%Y-%m-%d}" if end else " onwards"
    table = Table(title=f"{found.symbol} supply {span}")
    table.add_column("Timestamp")
    table.add_column("Circulating supply", justify="right")
    for obs in found.observations:
        table.add_row(obs.timestamp.isoformat(), _fmt_supply(obs.value))
    console.print(table)
    console.print(f"{len(found)} observations")


@cli.command()
@click.argument("symbols")
@click.pass_context
def bulk(ctx: click.Context, symbols: str) -> None:
    """Daily supply history for several symbols (comma-separated), as JSON."""
    config = _load_config(ctx)
    wanted = _parse_symbols(symbols)

    async def _run():
        service = await _create_service(config)
        try:
            history = await service.bulk_series(wanted)
        finally:
            await service.close()

        missing = [s for s in wanted if s not in history]
        if missing:
            console.print(f"[yellow]No history for: {', '.join(missing)}[/yellow]")
        output = {
            symbol: [o.model_dump(mode="json") for o in observations]
            for symbol, observations in history.items()
        }
        click.echo(json.dumps(output, indent=2))

    _run_async(_run())


@cli.command()
@click.argument("symbol")
@click.option(
    "--current",
    type=float,
    default=None,
    help="Current supply to compare against. Default: latest observation.",
)
@click.pass_context
def changes(ctx: click.Context, symbol: str, current: float | None) -> None:
    """Compute 1d/1w/1m supply changes for one symbol."""
    config = _load_config(ctx)

    async def _run():
        from supply_tracker.core import NotFoundError

        service = await _create_service(config)
        try:
            results = await service.changes(symbol, current_value=current)
        except NotFoundError as exc:
            _fail(str(exc))
        finally:
            await service.close()

        table = Table(title=f"{symbol.upper()} supply changes")
        table.add_column("Window", style="bold")
        table.add_column("Change", justify="right")
        table.add_column("Reference", justify="right")
        table.add_column("Reference time")
        for name, result in results.items():
            table.add_row(
                name,
                _fmt_change(result),
                _fmt_supply(result.reference_value),
                result.reference_timestamp.isoformat() if result.reference_timestamp else "-",
            )
        console.print(table)

    _run_async(_run())


@cli.command()
@click.option("--top", "-n", type=int, default=25, help="Number of rows to show.")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)
@click.pass_context
def compare(ctx: click.Context, top: int, fmt: str) -> None:
    """Supply comparison report across all stored series."""
    config = _load_config(ctx)

    async def _run():
        service = await _create_service(config)
        try:
            report = await service.comparison_report()
        finally:
            await service.close()

        if fmt == "json":
            click.echo(json.dumps([e.model_dump(mode="json") for e in report], indent=2))
            return

        if not report:
            console.print("[yellow]No supply history yet. Run 'collect' first.[/yellow]")
            return

        table = Table(title="Supply comparison")
        table.add_column("Symbol", style="bold")
        table.add_column("Latest", justify="right")
        for window in ("day", "week", "month"):
            table.add_column(f"{window} %", justify="right")
        for entry in report[:top]:
            cells = []
            for window in ("day", "week", "month"):
                change = entry.changes.get(window)
                cells.append(f"{change.percentage:+.2f}%" if change else "-")
            table.add_row(entry.symbol, _fmt_supply(entry.latest), *cells)
        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# snapshot / history
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--page", "-p", type=int, default=1, help="Page number (1-based).")
@click.option("--limit", "-l", type=int, default=50, help="Coins per page.")
@click.pass_context
def snapshot(ctx: click.Context, page: int, limit: int) -> None:
    """Show one page of the latest daily snapshot."""
    config = _load_config(ctx)

    async def _run():
        from supply_tracker.core import NotFoundError

        service = await _create_service(config)
        try:
            result = await service.latest_snapshot(page=page, limit=limit)
        except (NotFoundError, ValueError) as exc:
            _fail(str(exc))
        finally:
            await service.close()

        table = Table(
            title=f"Snapshot {result.last_updated:%Y-%m-%d %H:%M} "
            f"(page {result.page}/{result.max_page}, {result.total_coins} coins)"
        )
        table.add_column("#", justify="right")
        table.add_column("Symbol", style="bold")
        table.add_column("Name")
        table.add_column("Price", justify="right")
        table.add_column("Circulating", justify="right")
        table.add_column("1d", justify="right")
        table.add_column("1w", justify="right")
        table.add_column("1m", justify="right")
        for coin in result.coins:
            table.add_row(
                str(coin.rank),
                coin.symbol,
                coin.name,
                "-" if coin.price is None else f"{coin.price:,.4f}",
                _fmt_supply(coin.circulating_supply),
                _fmt_change(coin.supply_change_1d),
                _fmt_change(coin.supply_change_1w),
                _fmt_change(coin.supply_change_1m),
            )
        console.print(table)

    _run_async(_run())


@cli.command()
@click.argument("symbol")
@click.option("--days", "-d", type=int, default=30, help="Lookback in days.")
@click.pass_context
def history(ctx: click.Context, symbol: str, days: int) -> None:
    """Per-snapshot price and supply of one coin over recent days."""
    config = _load_config(ctx)

    async def _run():
        from supply_tracker.core import NotFoundError

        service = await _create_service(config)
        try:
            points = await service.coin_history(symbol, days=days)
        except NotFoundError as exc:
            _fail(str(exc))
        finally:
            await service.close()

        table = Table(title=f"{symbol.upper()} last {days} days")
        table.add_column("Captured")
        table.add_column("Price", justify="right")
        table.add_column("Market cap", justify="right")
        table.add_column("Circulating", justify="right")
        for point in points:
            table.add_row(
                f"{point.captured_at:%Y-%m-%d %H:%M}",
                "-" if point.price is None else f"{point.price:,.4f}",
                _fmt_supply(point.market_cap),
                _fmt_supply(point.circulating_supply),
            )
        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# stats / status
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Analyze stored supply history: record counts per series."""
    config = _load_config(ctx)

    async def _run():
        service = await _create_service(config)
        try:
            result = await service.history_statistics()
        finally:
            await service.close()

        table = Table(title="Supply history")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Total series", str(result.total_series))
        table.add_row("Single record (no change possible)", str(result.single_record))
        table.add_row("Multiple records", str(result.multi_record))
        table.add_row("Observed today", str(result.observed_today))
        console.print(table)

        if result.most_records:
            console.print(
                "Most records: "
                + ", ".join(f"{s} ({n})" for s, n in result.most_records)
            )
            console.print(
                "Fewest records: "
                + ", ".join(f"{s} ({n})" for s, n in result.fewest_records)
            )

    _run_async(_run())


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show storage status and data coverage."""
    config = _load_config(ctx)

    async def _run():
        service = await _create_service(config)
        try:
            result = await service.status()
        finally:
            await service.close()

        table = Table(title="Supply Tracker Status")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Storage backend", config.storage.backend.value)
        table.add_row("Database path", config.storage.sqlite_path)
        table.add_row("Healthy", "yes" if result["healthy"] else "no")
        table.add_section()
        table.add_row("Series", str(result["series"]))
        table.add_row("Observations", str(result["observations"]))
        table.add_row("Latest observation day", result["latest_observation_day"] or "N/A")
        table.add_section()
        table.add_row("Snapshots", str(result["snapshots"]))
        table.add_row("Latest snapshot day", result["latest_snapshot_day"] or "N/A")
        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# maintenance
# ---------------------------------------------------------------------------


@cli.command("delete-series")
@click.argument("symbol")
@click.confirmation_option(prompt="Delete this symbol's entire supply history?")
@click.pass_context
def delete_series(ctx: click.Context, symbol: str) -> None:
    """Delete one symbol's supply series."""
    config = _load_config(ctx)

    async def _run():
        service = await _create_service(config)
        try:
            deleted = await service.delete_series(symbol)
        finally:
            await service.close()

        if not deleted:
            _fail(f"No supply history for {symbol.upper()}")
        console.print(f"[green]✓[/green] Deleted supply history for {symbol.upper()}")

    _run_async(_run())


@cli.command("reset-snapshots")
@click.confirmation_option(prompt="Delete every saved snapshot?")
@click.pass_context
def reset_snapshots(ctx: click.Context) -> None:
    """Delete all snapshot batches; supply series are kept."""
    config = _load_config(ctx)

    async def _run():
        service = await _create_service(config)
        try:
            removed = await service.reset_snapshots()
        finally:
            await service.close()
        console.print(f"[green]✓[/green] Deleted {removed} snapshots")

    _run_async(_run())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
