"""Click-based CLI for portefeuille.

Thin wrapper around library modules. Every operation delegates to the
pricing, ledger or storage packages.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from portefeuille.core.exceptions import PortefeuilleError

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code.

    Library errors are reported on the console and turned into exit code 1.
    """
    try:
        return asyncio.run(coro)
    except PortefeuilleError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        attempts = exc.context.get("attempts") or []
        for attempt in attempts:
            console.print(f"  [dim]- {attempt}[/dim]")
        sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from portefeuille.core import load_config

        try:
            ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
        except PortefeuilleError as exc:
            raise click.UsageError(str(exc)) from exc
    return ctx.obj["config"]


async def _create_store_async(config):
    """Create and initialize storage from config."""
    from portefeuille.storage import create_store

    return await create_store(config.storage)


def _asset_class(crypto: bool):
    from portefeuille.core import AssetClass

    return AssetClass.CRYPTO if crypto else AssetClass.OTHER


def _parse_from_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"Expected YYYY-MM-DD, got {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="PORTEFEUILLE_CONFIG",
    default=None,
    help="Path to portefeuille.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.version_option(package_name="portefeuille-engine")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Portefeuille: price resolution and ledger import for a personal portfolio."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# price / history
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("symbol")
@click.option("--hint", "hints", multiple=True, help="Display name or alias used for search.")
@click.option("--crypto", is_flag=True, default=False, help="Try the crypto exchange first.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON to stdout.")
@click.pass_context
def price(ctx: click.Context, symbol: str, hints: tuple[str, ...], crypto: bool, as_json: bool) -> None:
    """Resolve the current price of SYMBOL in the reference currency."""
    config = _load_config(ctx)

    async def _run():
        from portefeuille.pricing import PricingEngine

        async with PricingEngine(config) as engine:
            return await engine.fetcher.get_spot(symbol, hints, asset_class=_asset_class(crypto))

    quote = _run_async(_run())
    if as_json:
        click.echo(json.dumps(quote.model_dump(mode="json"), indent=2))
        return

    table = Table(title=f"Price of {symbol}")
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Resolved symbol", quote.symbol or symbol)
    table.add_row("Price", f"{quote.price} {config.pricing.reference_currency}")
    table.add_row("As of", quote.as_of.isoformat())
    table.add_row("Source", str(quote.source))
    console.print(table)


@cli.command()
@click.argument("symbol")
@click.option("--from", "from_date", required=True, help="First date (YYYY-MM-DD).")
@click.option("--hint", "hints", multiple=True, help="Display name or alias used for search.")
@click.option("--crypto", is_flag=True, default=False, help="Try the crypto exchange first.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON to stdout.")
@click.pass_context
def history(
    ctx: click.Context,
    symbol: str,
    from_date: str,
    hints: tuple[str, ...],
    crypto: bool,
    as_json: bool,
) -> None:
    """Print the daily price history of SYMBOL since --from."""
    config = _load_config(ctx)
    start = _parse_from_date(from_date)

    async def _run():
        from portefeuille.pricing import PricingEngine

        async with PricingEngine(config) as engine:
            return await engine.fetcher.get_historical(
                symbol, hints, start, asset_class=_asset_class(crypto)
            )

    series = _run_async(_run())
    if as_json:
        click.echo(json.dumps(series.model_dump(mode="json"), indent=2))
        return

    table = Table(title=f"{series.symbol} ({series.source})")
    table.add_column("Date")
    table.add_column("Close", justify="right")
    for point in series.points:
        table.add_row(point.date.date().isoformat(), str(point.price))
    console.print(table)


# ---------------------------------------------------------------------------
# import
# ---------------------------------------------------------------------------


@cli.command("import")
@click.argument("source", type=click.Choice(["binance", "coinbase", "credit-agricole"]))
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--portfolio", "-p", "portfolio_id", type=int, default=1, help="Target portfolio id.")
@click.pass_context
def import_csv(ctx: click.Context, source: str, csv_file: Path, portfolio_id: int) -> None:
    """Import a broker or exchange CSV export."""
    config = _load_config(ctx)
    text = csv_file.read_text(encoding="utf-8-sig")

    async def _run():
        from portefeuille.ledger import CsvImporter, LedgerReconciler
        from portefeuille.pricing import PricingEngine

        store = await _create_store_async(config)
        try:
            async with PricingEngine(config) as engine:
                reconciler = LedgerReconciler(
                    engine.fetcher, window_seconds=config.ledger.pairing_window_seconds
                )
                return await CsvImporter(store, reconciler).import_csv(portfolio_id, source, text)
        finally:
            await store.close()

    summary = _run_async(_run())
    console.print(
        f"[green]✓[/green] Imported {summary.imported} transactions "
        f"({summary.skipped} duplicates skipped)"
    )
    report = summary.reconciliation
    if report is not None:
        console.print(
            f"  Reconciliation: {report.processed} processed, "
            f"{report.skipped} skipped, {report.errored} errored"
        )
        for message in report.errors:
            console.print(f"  [yellow]{message}[/yellow]")


# ---------------------------------------------------------------------------
# refresh / backfill
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--asset", "asset_id", type=int, default=None, help="Refresh a single asset.")
@click.option("--portfolio", "-p", "portfolio_id", type=int, default=None, help="Limit to one portfolio.")
@click.pass_context
def refresh(ctx: click.Context, asset_id: int | None, portfolio_id: int | None) -> None:
    """Refresh stored prices from the providers."""
    config = _load_config(ctx)

    async def _run():
        from portefeuille.core import RefreshOutcome
        from portefeuille.pricing import PriceRefreshService, PricingEngine, StoreManualPriceSource

        store = await _create_store_async(config)
        try:
            async with PricingEngine(config, manual_prices=StoreManualPriceSource(store)) as engine:
                service = PriceRefreshService(store, engine.fetcher)
                if asset_id is not None:
                    result = await service.refresh_asset_price(asset_id)
                    return RefreshOutcome(refreshed=[result])
                return await service.refresh_all(portfolio_id)
        finally:
            await store.close()

    outcome = _run_async(_run())

    table = Table(title="Price Refresh")
    table.add_column("Asset", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Source")
    table.add_column("Date")
    for result in outcome.refreshed:
        table.add_row(
            str(result.asset_id), str(result.price), str(result.source), result.price_date.isoformat()
        )
    console.print(table)
    for failure in outcome.failures:
        console.print(f"[red]Asset {failure.asset_id}:[/red] {failure.message}")
    console.print(
        f"[green]✓[/green] {len(outcome.refreshed)} refreshed"
        + (f" ({len(outcome.failures)} failed)" if outcome.failures else "")
    )


@cli.command()
@click.option("--portfolio", "-p", "portfolio_id", type=int, default=None, help="Limit to one portfolio.")
@click.pass_context
def backfill(ctx: click.Context, portfolio_id: int | None) -> None:
    """Load daily price history for every asset since its first purchase."""
    config = _load_config(ctx)

    async def _run():
        from portefeuille.pricing import PriceRefreshService, PricingEngine, StoreManualPriceSource

        store = await _create_store_async(config)
        try:
            async with PricingEngine(config, manual_prices=StoreManualPriceSource(store)) as engine:
                return await PriceRefreshService(store, engine.fetcher).backfill_price_history(
                    portfolio_id
                )
        finally:
            await store.close()

    outcome = _run_async(_run())

    table = Table(title="History Backfill")
    table.add_column("Asset", justify="right")
    table.add_column("Symbol", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for entry in outcome.processed:
        table.add_row(str(entry.asset_id), entry.symbol, "[green]ok[/green]", f"{entry.points_inserted} points")
    for entry in outcome.skipped:
        table.add_row(str(entry.asset_id), entry.symbol, "[yellow]skipped[/yellow]", entry.reason or "")
    for entry in outcome.errors:
        table.add_row(str(entry.asset_id), entry.symbol, "[red]error[/red]", entry.reason or "")
    console.print(table)


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


@cli.group()
def cache() -> None:
    """Inspect or purge the price cache."""


@cache.command("stats")
@click.pass_context
def cache_stats(ctx: click.Context) -> None:
    """Show cache tier status and entry counts."""
    config = _load_config(ctx)

    async def _run():
        from portefeuille.pricing import PricingEngine

        async with PricingEngine(config) as engine:
            return await engine.cache.stats()

    stats = _run_async(_run())

    table = Table(title="Price Cache")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Shared tier enabled", "yes" if stats.enabled else "no")
    table.add_row("Shared tier connected", "yes" if stats.backing_store_connected else "no")
    table.add_row("Entries", str(stats.entry_count))
    table.add_row("Local fallback entries", str(stats.fallback_entry_count))
    console.print(table)


@cache.command("clear")
@click.argument("key", required=False)
@click.pass_context
def cache_clear(ctx: click.Context, key: str | None) -> None:
    """Remove KEY (e.g. yahoo:AIR.PA) or, without KEY, every price."""
    config = _load_config(ctx)

    async def _run():
        from portefeuille.pricing import PricingEngine

        async with PricingEngine(config) as engine:
            return await engine.cache.invalidate(key)

    removed = _run_async(_run())
    target = key or "all prices"
    console.print(f"[green]✓[/green] Cleared {target} ({removed} shared keys removed)")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
