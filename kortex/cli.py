"""
CLI for Kortex.

Provides the command-line interface using argparse.
"""

import argparse
import sys
import threading
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .agent import AgentService, ExecutionLoop
from .browser import BrowserSession
from .config import DEFAULTS, KortexConfig
from .contract import ActionContract
from .embeddings import create_embedder
from .errors import KortexError
from .flight_recorder import FlightRecorder, read_records
from .logger import CompositeStatusSink, ConsoleStatusSink, LoggingStatusSink, configure_logging
from .memory_store import MemoryStore
from .planner import LangChainPlanner, ReplayPlanner
from .storage import SessionStore
from .types import TaskResult
from .utils import truncate_text


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kortex",
        description="Kortex - the action and perception layer for browser agents.",
        epilog="""
Examples:
  # Let the planner drive the browser
  kortex run "Open example.com and tell me the heading"

  # Use a specific LLM endpoint
  kortex run "Find the docs link" --model-endpoint http://localhost:1234/v1 --model llama3

  # Print the accessibility tree of a page
  kortex snapshot example.com

  # Re-execute a recorded trace
  kortex replay ~/.kortex/flight_recorder.jsonl --headless
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Kortex {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a goal through the planner",
    )
    run_parser.add_argument(
        "goal",
        type=str,
        help="The goal to accomplish in natural language",
    )
    _add_browser_arguments(run_parser)
    run_parser.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help=f"Maximum planner steps (default: {DEFAULTS['max_steps']})",
    )
    run_parser.add_argument(
        "--model-endpoint",
        type=str,
        default=None,
        help=f"OpenAI-compatible endpoint (default: {DEFAULTS['model_endpoint']})",
    )
    run_parser.add_argument(
        "--model",
        type=str,
        default=None,
        help=f"Model name (default: {DEFAULTS['model']})",
    )
    run_parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite database for sessions and memory",
    )
    run_parser.add_argument(
        "--remember",
        action="store_true",
        help="Save the outcome of a completed task to memory",
    )
    run_parser.add_argument(
        "--no-memory",
        action="store_true",
        help="Do not retrieve context from memory",
    )

    # Snapshot command
    snapshot_parser = subparsers.add_parser(
        "snapshot",
        help="Print the accessibility tree of a page",
    )
    snapshot_parser.add_argument("url", type=str, help="Page to open")
    _add_browser_arguments(snapshot_parser)

    # Replay command
    replay_parser = subparsers.add_parser(
        "replay",
        help="Re-execute a flight recorder trace",
    )
    replay_parser.add_argument("file", type=str, help="JSONL trace to replay")
    _add_browser_arguments(replay_parser)

    # Memory command
    memory_parser = subparsers.add_parser(
        "memory",
        help="Inspect stored memory fragments",
    )
    memory_parser.add_argument(
        "--count",
        action="store_true",
        help="Print the number of stored fragments",
    )
    memory_parser.add_argument(
        "--recent",
        type=int,
        metavar="N",
        default=None,
        help="Show the N most recent fragments",
    )
    memory_parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite database for sessions and memory",
    )
    memory_parser.add_argument("--debug", action="store_true", help="Verbose logging")

    return parser


def _add_browser_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="Run browser in headless mode",
    )
    parser.add_argument(
        "--flight-recorder",
        type=str,
        default=None,
        help="JSONL file that receives every action record",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")


def _config_from_args(args: argparse.Namespace) -> KortexConfig:
    return KortexConfig.from_cli_args(
        headless=getattr(args, "headless", None),
        max_steps=getattr(args, "max_steps", None),
        model_endpoint=getattr(args, "model_endpoint", None),
        model=getattr(args, "model", None),
        db_path=getattr(args, "db_path", None),
        flight_recorder_path=getattr(args, "flight_recorder", None),
        remember_outcomes=getattr(args, "remember", False),
        debug=getattr(args, "debug", False),
    )


def _execute(
    config: KortexConfig,
    console: Console,
    goal: str,
    build_planner,
    use_memory: bool = False,
) -> TaskResult:
    """Run one goal on a dedicated worker that owns the browser."""
    sink = ConsoleStatusSink(console)
    resources: dict = {}

    def build_loop() -> ExecutionLoop:
        session = BrowserSession.from_config(config)
        resources["session"] = session
        recorder = FlightRecorder(
            config.flight_recorder_path,
            redact_secrets=config.redact_secrets,
            fsync=config.fsync_records,
        ).open()
        resources["recorder"] = recorder
        session.init(headless=config.headless)

        contract = ActionContract(session, recorder)
        session_store = memory_store = embedder = None
        if use_memory:
            session_store = SessionStore(config.db_path)
            memory_store = MemoryStore(config.db_path)
            resources["stores"] = (session_store, memory_store)
            embedder = create_embedder(config.embedding_model)

        return ExecutionLoop(
            contract,
            build_planner(contract),
            status_sink=CompositeStatusSink([sink, LoggingStatusSink()]),
            memory_store=memory_store,
            embedder=embedder,
            session_store=session_store,
            memory_context_limit=config.memory_context_limit,
            remember_outcomes=config.remember_outcomes,
        )

    def teardown() -> None:
        for store in resources.get("stores", ()):
            store.close()
        if "recorder" in resources:
            resources["recorder"].close()
        if "session" in resources:
            resources["session"].close()

    results: list[TaskResult] = []
    done = threading.Event()

    def on_result(result: TaskResult) -> None:
        results.append(result)
        done.set()

    service = AgentService(
        loop_factory=build_loop,
        on_stop=teardown,
        on_result=on_result,
        queue_size=config.queue_size,
    )
    sink.print_header(goal)
    service.start()
    try:
        ack = service.submit(goal)
        if not ack.accepted:
            raise KortexError(ack.message)
        # Short waits keep Ctrl+C responsive
        while not done.wait(0.2):
            if not service.is_running:
                break
    except KeyboardInterrupt:
        service.cancel()
        raise
    finally:
        service.stop()

    if not results:
        raise KortexError("Agent worker exited without a result")
    result = results[0]
    sink.print_result(result)
    return result


def run_command(args: argparse.Namespace) -> int:
    """Execute the run command.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    console = Console()
    config = _config_from_args(args)
    configure_logging(config.debug)

    try:
        config.ensure_directories()
        result = _execute(
            config,
            console,
            args.goal,
            lambda contract: LangChainPlanner(config, contract.tool_specs()),
            use_memory=not args.no_memory,
        )
        return 0 if result.success else 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        console.print(f"[bold red]Fatal error: {e}[/bold red]")
        return 1


def replay_command(args: argparse.Namespace) -> int:
    """Re-execute a recorded trace through the action contract."""
    console = Console()
    config = _config_from_args(args)
    configure_logging(config.debug)

    try:
        records = read_records(args.file)
    except OSError as e:
        console.print(f"[bold red]Cannot read trace: {e}[/bold red]")
        return 1
    if not records:
        console.print("[yellow]Trace contains no actions[/yellow]")
        return 0

    # Replaying into the file being read would append to it
    if config.flight_recorder_path.resolve() == Path(args.file).expanduser().resolve():
        config.flight_recorder_path = config.flight_recorder_path.with_suffix(".replay.jsonl")

    try:
        config.ensure_directories()
        result = _execute(
            config,
            console,
            f"Replay {args.file}",
            lambda contract: ReplayPlanner(records),
        )
        return 0 if result.success else 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        console.print(f"[bold red]Fatal error: {e}[/bold red]")
        return 1


def snapshot_command(args: argparse.Namespace) -> int:
    """Open a page and print its accessibility tree."""
    console = Console()
    config = _config_from_args(args)
    configure_logging(config.debug)

    try:
        with BrowserSession.from_config(config) as session:
            session.init(headless=config.headless)
            session.navigate(args.url)
            console.print_json(session.get_snapshot())
        return 0
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except KortexError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1
    except Exception as e:
        console.print(f"[bold red]Fatal error: {e}[/bold red]")
        return 1


def memory_command(args: argparse.Namespace) -> int:
    """Inspect the memory store."""
    console = Console()
    config = _config_from_args(args)
    configure_logging(config.debug)

    try:
        with MemoryStore(config.db_path) as store:
            if args.count or args.recent is None:
                console.print(f"[bold]{store.count()}[/bold] memory fragments in {config.db_path}")
            if args.recent is not None:
                table = Table(title=f"Recent Memory ({args.recent})")
                table.add_column("Created", style="dim")
                table.add_column("Content")
                table.add_column("Tags", style="cyan")
                for fragment in store.recent(args.recent):
                    table.add_row(
                        fragment.created_at.strftime("%Y-%m-%d %H:%M") if fragment.created_at else "",
                        truncate_text(fragment.content, 80),
                        ", ".join(f"{k}={v}" for k, v in fragment.tags.items()),
                    )
                console.print(table)
        return 0
    except KortexError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "run":
        return run_command(args)

    if args.command == "snapshot":
        return snapshot_command(args)

    if args.command == "replay":
        return replay_command(args)

    if args.command == "memory":
        return memory_command(args)

    # Unknown command
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
