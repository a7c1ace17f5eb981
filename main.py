#!/usr/bin/env python3
"""
Market Pattern Scanner - Main Entry Point

Runs one scan and prints its terminal status. Meant to be called by a
scheduler (cron, a CI schedule, a container job); only one run of each scan
type should be scheduled at a time.

Usage:
    # ATH-recovery scan
    python main.py ath

    # Spike scan across global markets
    python main.py spike

    # Probe upstreams and the store
    python main.py health

    # Run on a weekend anyway
    python main.py ath --force
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import get_settings
from data.alpha_vantage_client import AlphaVantageClient
from data.yahoo_client import YahooClient
from scanner.ath_scanner import run_ath_scan
from scanner.health import run_health_check
from scanner.scan_log import ScanResult, ScanStatus
from scanner.spike_scanner import run_spike_scan
from storage import StoreError, create_store
from utils.helpers import is_weekend
from utils.logging import setup_logging


console = Console()

STATUS_STYLES = {
    ScanStatus.COMPLETED: "green",
    ScanStatus.PARTIAL: "yellow",
    ScanStatus.FAILED: "red",
}


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Scan equity markets for ATH-recovery and spike patterns",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py ath              # ATH-recovery scan
    python main.py spike            # Spike scan
    python main.py health           # Health probe
    python main.py spike --force    # Run even on a weekend
        """,
    )

    parser.add_argument(
        "command",
        choices=["ath", "spike", "health"],
        help="What to run",
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Run scans on weekends too",
    )
    parser.add_argument(
        "--store",
        choices=["memory", "supabase"],
        default=None,
        help="Store backend (default: STORE_BACKEND setting)",
    )

    # Logging
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-essential output",
    )

    return parser.parse_args()


def display_scan_result(result: ScanResult) -> None:
    """Print the terminal state of a scan run."""
    style = STATUS_STYLES.get(result.status, "white")

    table = Table(title=f"{result.kind.value.upper()} scan {result.scan_id or ''}".strip())
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Status", f"[{style}]{result.status.value}[/{style}]")
    for name, value in result.counters.items():
        table.add_row(name.replace("_", " ").capitalize(), str(value))
    table.add_row("Errors", str(result.error_count))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    if result.markets_scanned:
        table.add_row("Markets", ", ".join(result.markets_scanned))
    if result.stopped_reason:
        table.add_row("Stopped", result.stopped_reason)

    console.print(table)

    for message in result.errors[:10]:
        console.print(f"  [dim]- {message}[/dim]")
    if len(result.errors) > 10:
        console.print(f"\n[dim]... and {len(result.errors) - 10} more errors[/dim]")


def display_health(row: Dict[str, Any]) -> None:
    """Print a health check row."""
    table = Table(title="Health Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    for key, value in row.items():
        style = "green" if value == "healthy" else "yellow" if value in ("degraded", "rate_limited") else "red"
        table.add_row(key.replace("_status", "").replace("_", " "), f"[{style}]{value}[/{style}]")
    console.print(table)


async def run_health(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = create_store(args.store, settings)
    yahoo = YahooClient(settings)
    alpha_vantage = AlphaVantageClient(settings=settings)
    try:
        row = await run_health_check(store, yahoo, alpha_vantage, settings)
    finally:
        await asyncio.gather(yahoo.close(), alpha_vantage.close(), return_exceptions=True)

    display_health(row)
    return 0 if row["database_status"] == "healthy" else 1


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    if args.command == "health":
        return await run_health(args)

    if is_weekend() and not args.force:
        console.print("[yellow]Markets are closed on weekends, skipping scan (use --force to override)[/yellow]")
        return 0

    settings = get_settings()
    console.print(Panel(
        f"[bold blue]Market Pattern Scanner[/bold blue]\n\n"
        f"Scan: {args.command}\n"
        f"Store: {args.store or settings.store_backend}",
        expand=False,
    ))

    try:
        store = create_store(args.store, settings)
        if args.command == "ath":
            result = await run_ath_scan(settings, store)
        else:
            result = await run_spike_scan(settings, store)

    except KeyboardInterrupt:
        console.print("\n[yellow]Scan interrupted by user[/yellow]")
        return 130

    except StoreError as e:
        console.print(f"\n[red]Store error: {e}[/red]")
        logger.exception("Could not open store")
        return 1

    console.print()
    display_scan_result(result)
    return 1 if result.status == ScanStatus.FAILED else 0


def main() -> int:
    """Main entry point."""
    args = parse_args()

    # Setup logging
    settings = get_settings()
    log_level = "DEBUG" if args.verbose else ("WARNING" if args.quiet else settings.log_level)
    setup_logging(level=log_level, log_file=settings.log_file)

    return asyncio.run(main_async(args))


if __name__ == "__main__":
    sys.exit(main())
