"""
Reporting of supervisor transitions.

The supervisor never prints. It hands every significant transition to an
EventSink as an event name plus structured fields; LoggingSink forwards
them to stdlib logging, ConsoleSink renders them on a rich Console.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger("subscription_supervisor")


class EventSink(Protocol):
    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        ...


def format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items())


class LoggingSink:
    """Default sink: one log line per transition."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        message = f"{event} {format_fields(fields)}".rstrip()
        self.log.log(level, message, extra={"event": event, "fields": fields})


class ConsoleSink:
    """Human-readable sink for the terminal."""

    # Events that read as good news get green, like a successful connect
    SUCCESS_EVENTS = {"connected", "subscribed", "reset_complete"}

    def __init__(self, console: Console, show_debug: bool = False):
        self.console = console
        self.show_debug = show_debug

    def _style(self, event: str, level: int) -> str:
        if level >= logging.ERROR:
            return "red"
        if level >= logging.WARNING:
            return "yellow"
        if event in self.SUCCESS_EVENTS:
            return "green"
        if level <= logging.DEBUG:
            return "dim"
        return "cyan"

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        if level <= logging.DEBUG and not self.show_debug:
            return
        style = self._style(event, level)
        details = escape(format_fields(fields))
        prefix = "✓ " if style == "green" else ""
        self.console.print(f"[{style}]{prefix}{event}[/{style}] [dim]{details}[/dim]")
