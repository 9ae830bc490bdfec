#!/usr/bin/env python3
"""
Contract Event Monitor
Keeps subscriptions to contract events alive across a pool of WebSocket
providers and displays every event in a human-readable format in the terminal.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .config import SupervisorConfig, load_config, to_websocket_url
from .dedup import SeenEvents
from .errors import InvalidConfig, SupervisorError
from .models import EventRecord
from .observability import ConsoleSink
from .supervisor import SupervisionOrchestrator
from .web3_client import Web3Connector

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

BANNER = """
    ╔═══════════════════════════════════════════════════════╗
    ║         Contract Event Monitor                        ║
    ║         Supervised WebSocket Subscriptions            ║
    ╚═══════════════════════════════════════════════════════╝
    """


class EventPrinter:
    """Renders events on the console, suppressing ones already shown."""

    def __init__(self, console: Console):
        self.console = console
        self.seen = SeenEvents()
        self.event_count = 0
        self.displayed_count = 0

    def format_event(self, record: EventRecord, title_suffix: str = "", color: str = "cyan") -> Panel:
        """
        Format an event as a Rich panel for display.

        Args:
            record: Decoded event
            title_suffix: Extra text for the panel title
            color: Border and title colour

        Returns:
            Rich Panel object
        """
        lines = []
        lines.append(f"[bold]Block:[/bold] {record.checkpoint}")
        lines.append(f"[bold]Time:[/bold] {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append(f"[bold]Tx Hash:[/bold] {record.transaction_hash}")
        lines.append(f"[bold]Contract:[/bold] {record.address}")
        lines.append("")

        for name, value in record.args.items():
            lines.append(f"[bold]{escape(str(name))}:[/bold] {escape(str(value))}")

        return Panel(
            "\n".join(lines),
            title=f"[{color} bold]{record.event_name}{title_suffix}[/{color} bold]",
            border_style=color,
            padding=(1, 2)
        )

    def _show(self, record: EventRecord, title_suffix: str = "", color: str = "cyan") -> None:
        self.event_count += 1
        if self.seen.seen(record):
            return
        self.displayed_count += 1
        self.console.print(self.format_event(record, title_suffix, color))
        self.console.print(f"[dim]Events displayed: {self.displayed_count} | Total received: {self.event_count}[/dim]\n")

    def on_data(self, record: EventRecord) -> None:
        self._show(record)

    def on_changed(self, record: EventRecord) -> None:
        # Retractions are always shown even though the event itself was seen
        self.event_count += 1
        self.console.print(self.format_event(record, " (removed by reorg)", "yellow"))

    def on_history(self, records: List[EventRecord]) -> None:
        for record in records:
            self._show(record, " (recovered)", "magenta")


async def run_monitor(config: SupervisorConfig, console: Console, verbose: bool = False) -> None:
    supervisor = SupervisionOrchestrator(
        Web3Connector(),
        sink=ConsoleSink(console, show_debug=verbose),
        reconnect=config.reconnect,
        default_history_interval=config.default_history_interval,
        failure_alert_threshold=config.failure_alert_threshold,
    )
    printer = EventPrinter(console)

    supervisor.set_providers(config.providers)
    console.print(f"[cyan]Connecting to {supervisor.current_provider}...[/cyan]")
    await supervisor.init_connection()

    for subscription in config.subscriptions:
        await supervisor.listen(
            subscription.descriptor(printer.on_data, printer.on_changed, printer.on_history)
        )

    console.print("[yellow]Press Ctrl+C to stop[/yellow]\n")
    try:
        # Subscriptions run in background tasks; just keep the loop alive
        await asyncio.Event().wait()
    finally:
        await supervisor.aclose()
        console.print(f"[cyan]Stopped. Total events received: {printer.event_count}[/cyan]")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Listen to contract events over supervised WebSocket subscriptions"
    )
    parser.add_argument(
        "--config-path",
        type=str,
        default="./config.toml",
        help="Path to config.toml file (default: ./config.toml)"
    )
    parser.add_argument(
        "--provider",
        action="append",
        default=[],
        help="WebSocket URL of a node; repeat for failover (overrides providers in config)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug-level supervisor events"
    )

    args = parser.parse_args(argv)

    console = Console()
    console.print(BANNER, style="bold cyan")

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config_path)
    except FileNotFoundError:
        console.print(f"[red]Error: Config file not found at {args.config_path}[/red]")
        return 1
    except InvalidConfig as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    if args.provider:
        config = replace(config, providers=[to_websocket_url(p) for p in args.provider])

    if not config.providers:
        console.print("[red]Error: No providers configured[/red]")
        console.print("Please provide a WebSocket URL using --provider or set providers in config.toml")
        return 1

    if not config.subscriptions:
        console.print("[red]Error: No subscriptions configured in the config file[/red]")
        return 1

    try:
        asyncio.run(run_monitor(config, console, verbose=args.verbose))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping event listener...[/yellow]")
    except SupervisorError as e:
        console.print(f"[red]Fatal error in event listener: {e}[/red]")
        logging.exception("Event listener crashed with exception:")
        return 1
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
