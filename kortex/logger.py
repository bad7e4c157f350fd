"""
Status reporting for Kortex.

Status events are the human-facing progress stream of a task. They are
printed with rich and mirrored into stdlib logging.
"""

import logging
from typing import Callable, Iterable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .types import StatusEvent, StatusLevel, TaskResult


logger = logging.getLogger(__name__)


LEVEL_STYLES = {
    StatusLevel.INIT: "bold magenta",
    StatusLevel.USER: "bold cyan",
    StatusLevel.PLANNING: "yellow",
    StatusLevel.ACTION: "blue",
    StatusLevel.RESPONSE: "green",
    StatusLevel.ERROR: "bold red",
    StatusLevel.COMPLETE: "bold green",
}


def configure_logging(debug: bool = False) -> None:
    """Set up stdlib logging; DEBUG when debug is on, else WARNING."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("kortex").setLevel(level)


class ConsoleStatusSink:
    """Prints status events to the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, event: StatusEvent) -> None:
        style = LEVEL_STYLES.get(event.level, "white")
        line = Text()
        line.append(event.timestamp.strftime("%H:%M:%S "), style="dim")
        line.append(f"{event.level.value:<8} ", style=style)
        line.append(event.message)
        self.console.print(line)

    def print_header(self, goal: str) -> None:
        self.console.print()
        self.console.print(Panel(
            f"[bold cyan]Goal:[/bold cyan] {goal}",
            title="Kortex",
            border_style="cyan",
        ))
        self.console.print()

    def print_result(self, result: TaskResult) -> None:
        """Print the final answer (if any) and a summary table."""
        if result.final_answer:
            self.console.print()
            self.console.print(Panel(
                result.final_answer,
                title="Final Answer",
                border_style="green",
            ))

        table = Table(title="Run Summary", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")
        status_style = "green" if result.success else "red"
        table.add_row("Status", f"[{status_style}]{result.state.value}[/{status_style}]")
        table.add_row("Actions Executed", str(result.actions_taken))
        if result.session_id:
            table.add_row("Session", result.session_id)
        if result.error:
            table.add_row("Error", f"[red]{result.error}[/red]")

        self.console.print()
        self.console.print(table)


class LoggingStatusSink:
    """Mirrors status events into a stdlib logger."""

    def __init__(self, name: str = "kortex.status"):
        self.logger = logging.getLogger(name)

    def __call__(self, event: StatusEvent) -> None:
        level = logging.ERROR if event.level is StatusLevel.ERROR else logging.INFO
        self.logger.log(level, f"[{event.level.value}] {event.message}")


class CompositeStatusSink:
    """Fans one event out to several sinks."""

    def __init__(self, sinks: Iterable[Callable[[StatusEvent], None]]):
        self.sinks = list(sinks)

    def __call__(self, event: StatusEvent) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                logger.error(f"Status sink {sink!r} failed: {type(e).__name__}: {e}")
