#!/usr/bin/env python3
"""
Ledger Sync CLI

Usage:
    ledger-sync <command> [options]
    python -m ledger_sync.cli <command> [options]

Commands:
    serve       Run the sync service with its liveness endpoint
    reconcile   Run one reconciliation pass and print the report
    init-db     Create missing store tables
    status      Query /status of a running instance

Environment:
    DATABASE_URL                 SQLAlchemy async URL
    POLYGON_RPC_URL              Ledger JSON-RPC endpoint
    ELECTION_CONTRACT_ADDRESS    Bound contract instance
    LOG_LEVEL                    DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from ledger_sync import __version__
from ledger_sync.cli.reconcile_commands import ReconcileCommand
from ledger_sync.cli.service_commands import InitDbCommand, ServeCommand, StatusCommand
from ledger_sync.config.settings import RepairPolicy


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-sync",
        description="Ledger vote synchronization service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --port 3000
  %(prog)s reconcile --election e-2026
  %(prog)s reconcile --policy counter-overwrite
  %(prog)s status --url http://localhost:3000
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without writing"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the sync service")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile_parser.add_argument(
        "--policy",
        choices=[p.value for p in RepairPolicy],
        default=None,
        help="Repair policy (default: REPAIR_POLICY)"
    )
    reconcile_parser.add_argument(
        "--allow-synthetic",
        action="store_true",
        help="Explicit opt-in required for synthetic-attribution"
    )
    reconcile_parser.add_argument(
        "--election", "-e",
        action="append",
        dest="elections",
        help="Restrict to an election id (repeatable)"
    )

    subparsers.add_parser("init-db", help="Create missing store tables")

    status_parser = subparsers.add_parser("status", help="Query a running instance")
    status_parser.add_argument("--url", default="http://localhost:3000", help="Service base URL")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "serve": ServeCommand,
        "reconcile": ReconcileCommand,
        "init-db": InitDbCommand,
        "status": StatusCommand,
    }

    handler = command_map[parsed.command](dry_run=parsed.dry_run)
    return handler.execute(parsed)


if __name__ == "__main__":
    sys.exit(main())
