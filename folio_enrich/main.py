#!/usr/bin/env python3
"""
Command line entry point.

Examples:
  folio-enrich enrich --positions positions.json
  folio-enrich enrich --from-broker --json
  folio-enrich status
  folio-enrich cache stats
  folio-enrich serve --port 8000
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

import structlog
from rich import box
from rich.console import Console
from rich.table import Table

from folio_enrich.config import Settings, validate_environment_variables
from folio_enrich.exceptions import ConfigurationError, EnrichmentError
from folio_enrich.ledger import LimitsSummary
from folio_enrich.pipeline import EnrichmentResult
from folio_enrich.services import Services, build_services

logger = structlog.get_logger(__name__)
console = Console()


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="folio-enrich",
        description="Enrich Trading212 positions with company fundamentals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    enrich = sub.add_parser("enrich", help="Enrich a batch of positions")
    source = enrich.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--positions",
        type=Path,
        help="JSON file with a list of positions (or {\"positions\": [...]})",
    )
    source.add_argument(
        "--from-broker", action="store_true", help="Fetch open positions from Trading212"
    )
    enrich.add_argument(
        "--no-cache", action="store_true", help="Skip the cache-first lookup"
    )
    enrich.add_argument(
        "--json", action="store_true", help="Print the raw JSON result instead of tables"
    )

    sub.add_parser("status", help="Show provider quota status")

    cache = sub.add_parser("cache", help="Inspect or maintain the fundamentals caches")
    cache.add_argument("action", choices=["stats", "cleanup", "clear"])

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def load_positions(path: Path) -> list:
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = payload.get("positions")
    return payload


def _fmt_number(value: float | None, precision: int = 2) -> str:
    if value is None:
        return "-"
    if abs(value) >= 1e9:
        return f"{value / 1e9:,.1f}B"
    return f"{value:,.{precision}f}"


def display_enrichment(result: EnrichmentResult) -> None:
    table = Table(show_header=True, box=box.ROUNDED, title="Enriched Positions")
    table.add_column("Ticker", style="cyan")
    table.add_column("Company")
    table.add_column("Sector", style="yellow")
    table.add_column("Country")
    table.add_column("Mkt Cap", justify="right")
    table.add_column("P/E", justify="right")
    table.add_column("Source", style="blue")
    table.add_column("Stale", justify="center")

    for p in result.enriched_positions:
        table.add_row(
            p.ticker,
            p.company_name,
            p.sector,
            p.country,
            _fmt_number(p.market_cap),
            _fmt_number(p.pe_ratio),
            p.data_source or "-",
            "[red]yes[/red]" if p.is_stale else "",
        )
    console.print(table)

    s = result.summary
    summary_table = Table(show_header=True, box=box.ROUNDED)
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Value", style="green", justify="right")
    summary_table.add_row("Total Processed", str(s.total_processed))
    summary_table.add_row("From Cache", str(s.from_cache))
    summary_table.add_row("Freshly Fetched", str(s.freshly_fetched))
    summary_table.add_row("Skipped / Failed", str(s.skipped_or_failed))
    summary_table.add_row("Daily API Usage", s.daily_api_usage)
    summary_table.add_row("Cache Hit Rate", f"{s.cache_hit_rate:.1f}%")
    console.print(summary_table)


def display_status(summary: LimitsSummary) -> None:
    table = Table(show_header=True, box=box.ROUNDED, title="Provider Limits")
    table.add_column("Provider", style="cyan")
    table.add_column("Available", justify="center")
    table.add_column("Minute", justify="right")
    table.add_column("Hour", justify="right")
    table.add_column("Day", justify="right")
    table.add_column("Warning", style="yellow")

    def fmt(remaining: float) -> str:
        return "∞" if remaining == float("inf") else str(int(remaining))

    for status in summary.providers:
        table.add_row(
            status.name,
            "[green]yes[/green]" if status.can_make_request else "[red]no[/red]",
            fmt(status.remaining_minute),
            fmt(status.remaining_hour),
            fmt(status.remaining_day),
            status.warning or "",
        )
    console.print(table)

    for line in summary.critical_limits:
        console.print(f"[bold red]![/bold red] {line}")
    for line in summary.recommendations:
        console.print(f"[yellow]→[/yellow] {line}")


def display_cache_stats(services: Services) -> None:
    table = Table(show_header=True, box=box.ROUNDED, title="Fundamentals Caches")
    table.add_column("Cache", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Fresh", justify="right", style="green")
    table.add_column("Expired", justify="right", style="red")
    table.add_column("Avg Age (h)", justify="right")
    for cache in services.caches:
        stats = cache.stats()
        table.add_row(
            cache.namespace,
            str(stats.total_cached),
            str(stats.fresh),
            str(stats.expired),
            f"{stats.average_age_hours:.2f}",
        )
    console.print(table)


async def run_enrich(args: argparse.Namespace, services: Services) -> int:
    if args.from_broker:
        positions = await services.broker.get_positions()
        if not positions:
            console.print("[yellow]No open positions.[/yellow]")
            return 0
    else:
        positions = load_positions(args.positions)

    if args.no_cache:
        services.pipeline.options = replace(services.options, prefer_cache=False)

    result = await services.pipeline.enrich(positions)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        display_enrichment(result)
    return 0


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    services = build_services(settings)
    try:
        if args.command == "enrich":
            return await run_enrich(args, services)
        if args.command == "status":
            display_status(services.ledger.summary())
            return 0
        if args.command == "cache":
            if args.action == "cleanup":
                removed = sum(cache.cleanup() for cache in services.caches)
                console.print(f"Removed {removed} expired entries")
            elif args.action == "clear":
                for cache in services.caches:
                    cache.clear()
                console.print("All fundamentals caches cleared")
            display_cache_stats(services)
            return 0
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await services.aclose()


def serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from folio_enrich.api import create_app

    uvicorn.run(create_app(settings=settings), host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = Settings()
        if args.command in ("enrich", "serve"):
            validate_environment_variables(settings)

        if args.command == "serve":
            return serve(args, settings)
        return asyncio.run(run_command(args, settings))

    except ConfigurationError as e:
        console.print(f"\n[bold red]Configuration error:[/bold red] {e}\n")
        return 2
    except EnrichmentError as e:
        console.print(f"\n[bold red]Enrichment failed:[/bold red] {e}\n")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user.[/yellow]\n")
        return 1
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        console.print(f"\n[bold red]Unexpected error:[/bold red] {e}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
