"""Command-line entry point: starts the supervisor and its tab workers."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .logger import get_logger, init_logging, log_exception
from .ui import TerminalUI

log = get_logger("cli")


def run_interactive(args: argparse.Namespace) -> int:
    """Run the multi-tab terminal UI until /quit or Ctrl+Q."""
    root = Path(args.workspace).resolve()
    if not root.is_dir():
        print(f"Workspace not found: {root}", file=sys.stderr)
        return 1

    ui = TerminalUI(socket_path=args.socket, root=root)
    try:
        return asyncio.run(ui.run())
    except OSError as e:
        # Bus or spawn failure: nothing is usable without them
        log_exception(log, "supervisor failed", e)
        print(f"pondcode: {e}", file=sys.stderr)
        return 1


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Multi-tab terminal client for streamed agent conversations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Tabs rooted at the current directory
  pondcode

  # Tabs rooted at a specific project
  pondcode /path/to/project

  # Fixed bus socket, verbose logging mirrored to stderr
  pondcode --socket /tmp/pondcode.sock --debug

Supervisor commands:
  /new  /history  /tabs  /tab <n|id>  /close  /quit
        """
    )
    parser.add_argument(
        "workspace",
        nargs="?",
        default=".",
        help="Workspace directory (default: current directory)"
    )
    parser.add_argument(
        "--socket",
        type=str,
        default=None,
        help="IPC socket path (default: private temporary directory)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Mirror log records to stderr"
    )

    args = parser.parse_args()
    init_logging(process_name="supervisor", level=logging.DEBUG, stderr=args.debug)
    sys.exit(run_interactive(args))


if __name__ == "__main__":
    main()
