#!/usr/bin/env python3
"""mdsync application entry point.

This module provides a unified entry point for all interfaces:
- CLI: Command-line interface (including the sync client and server)
- Web: Sync server plus the read-only document API

Usage:
    python -m mdsync.main cli status             # Show configuration and storage status
    python -m mdsync.main cli sync now           # Sync the configured directory
    python -m mdsync.main cli sync serve         # Start the sync server
    python -m mdsync.main web [--port 8080]      # Start web server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="mdsync - Markdown directory synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m mdsync.main cli status                       Show status
  python -m mdsync.main cli list-docs                    List documents on this server
  python -m mdsync.main cli sync --dir ~/notes now       Sync ~/notes with the server
  python -m mdsync.main cli sync resolve a.md server     Take the server copy of a.md
  python -m mdsync.main web --port 8384                  Start web server on port 8384
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/mdsync/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    # Create subparsers for each interface
    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    # Add CLI subparser (imports cli module)
    from mdsync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    # Add Web subparser (imports web module)
    from mdsync.web import add_web_subparser
    add_web_subparser(subparsers)

    return parser


def main() -> NoReturn:
    """Main entry point for mdsync.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Dispatch to appropriate interface
    if args.interface == "cli":
        from mdsync.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    elif args.interface == "web":
        from mdsync.web import run as run_web
        exit_code = run_web(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
