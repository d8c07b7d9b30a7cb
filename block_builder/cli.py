"""Command line tool for inspecting stored workflow states.

Lists, shows, diffs and prunes the checkpoints written by the workflow
engine, using the same state store configuration the engine uses.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown

from . import __version__
from .config import STATE_BACKENDS, Config
from .exceptions import BlockBuilderError
from .orchestration.state_store import StateStore, diff_states, get_state_store
from .reporting import diff_table, export_state_summary, states_table
from .utils.logging_factory import LoggingFactory

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="block-builder-state",
        description="Inspect and maintain block builder workflow checkpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # List live workflow threads
  block-builder-state list

  # Include labeled milestone checkpoints
  block-builder-state list --all

  # Show a markdown summary of one thread
  block-builder-state show hero-banner

  # Compare two snapshots
  block-builder-state diff hero-banner--checkpoint-suspended-... hero-banner

  # Keep only the five newest checkpoints of a thread
  block-builder-state cleanup --keep 5 --prefix hero-banner--checkpoint-
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument("--backend", choices=STATE_BACKENDS, help="State backend (default: from environment)")
    parser.add_argument("--state-dir", type=Path, help="Directory of the file backend")
    parser.add_argument("--db-path", type=Path, help="Database of the sqlite backend")

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    list_parser = subparsers.add_parser("list", help="List stored states, newest first")
    list_parser.add_argument("--all", action="store_true", help="Include labeled checkpoints")

    show_parser = subparsers.add_parser("show", help="Show a markdown summary of a stored state")
    show_parser.add_argument("key", help="Thread id or checkpoint key")
    show_parser.add_argument("--json", action="store_true", help="Print the raw JSON state instead")

    diff_parser = subparsers.add_parser("diff", help="Compare two stored states field by field")
    diff_parser.add_argument("old", help="Key of the older state")
    diff_parser.add_argument("new", help="Key of the newer state")

    checkpoints_parser = subparsers.add_parser("checkpoints", help="List labeled checkpoints of a thread")
    checkpoints_parser.add_argument("thread_id", help="Thread id")

    delete_parser = subparsers.add_parser("delete", help="Delete a stored state")
    delete_parser.add_argument("key", help="Thread id or checkpoint key")

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Delete all but the newest labeled checkpoints (live threads are kept)"
    )
    cleanup_parser.add_argument("--keep", type=int, default=10, help="Number of states to keep (default: 10)")
    cleanup_parser.add_argument("--prefix", help="Only consider keys starting with this prefix")
    cleanup_parser.add_argument(
        "--include-threads",
        action="store_true",
        help="Also prune live thread records, including suspended workflows",
    )

    return parser


def _build_config(args: argparse.Namespace) -> Config:
    config = Config.from_env(args.env_file)
    if args.backend:
        config.state_backend = args.backend
    if args.state_dir:
        config.state_dir = args.state_dir
    if args.db_path:
        config.state_db_path = args.db_path
    return config


def list_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    infos = store.list() if args.all else store.list_threads()
    if not infos:
        console.print("No stored workflow states.")
        return 0
    console.print(states_table(infos))
    return 0


def show_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    state = store.load(args.key)
    if state is None:
        console.print(f"[red]No state stored under '{args.key}'[/red]")
        return 1
    if args.json:
        console.print_json(state.to_json())
    else:
        console.print(Markdown(export_state_summary(state)))
    return 0


def diff_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    old_state = store.load(args.old)
    new_state = store.load(args.new)
    missing = [key for key, state in ((args.old, old_state), (args.new, new_state)) if state is None]
    if missing:
        console.print(f"[red]No state stored under: {', '.join(missing)}[/red]")
        return 1

    diff = diff_states(old_state, new_state)
    if not diff:
        console.print("States are identical.")
        return 0
    console.print(diff_table(diff, title=f"{args.old} -> {args.new}"))
    return 0


def checkpoints_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    checkpoints = store.list_checkpoints(args.thread_id)
    if not checkpoints:
        console.print(f"No checkpoints for '{args.thread_id}'.")
        return 0
    infos = [info for info in store.list() if info.key in {c.key for c in checkpoints}]
    console.print(states_table(infos, title=f"Checkpoints of {args.thread_id}"))
    return 0


def delete_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    if store.delete(args.key):
        console.print(f"Deleted '{args.key}'.")
        return 0
    console.print(f"[yellow]Nothing stored under '{args.key}'[/yellow]")
    return 1


def cleanup_command(args: argparse.Namespace, store: StateStore, console: Console) -> int:
    if args.keep < 0:
        console.print("[red]--keep must be non-negative[/red]")
        return 2
    deleted = store.cleanup_old_states(
        keep=args.keep, prefix=args.prefix, checkpoints_only=not args.include_threads
    )
    console.print(f"Deleted {deleted} state(s).")
    return 0


COMMANDS = {
    "list": list_command,
    "show": show_command,
    "diff": diff_command,
    "checkpoints": checkpoints_command,
    "delete": delete_command,
    "cleanup": cleanup_command,
}


def main(argv: Optional[List[str]] = None, console: Optional[Console] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    console = console or Console()

    LoggingFactory.initialize(level="DEBUG" if args.verbose else "WARNING")

    try:
        config = _build_config(args)
        store = get_state_store(config)
        return COMMANDS[args.command](args, store, console)
    except (BlockBuilderError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        console.print(f"[red]Error:[/red] {e}")
        return 1
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
