"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the trade journal.

- argparse-based CLI, one mode per invocation
- Loads configuration from CLI and environment (.env)
- Prints a JSON summary of the run
- Exit code 0 on success, 1 on failure, 130 on interrupt

============================================================
USAGE
============================================================
python -m orchestrator.cli --mode init-db
python -m orchestrator.cli --mode full-sync --user-id 42
python -m orchestrator.cli --mode quick-sync --user-id 42
python -m orchestrator.cli --mode sync-due
python -m orchestrator.cli --mode stream --user-id 42
python -m orchestrator.cli --mode market-data
python -m orchestrator.cli --mode cleanup --dry-run

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from reconciliation.errors import SyncError
from streaming import StreamAuthError

from .core import JournalRuntime, setup_logging
from .models import RunSummary, RuntimeMode


SUPPORTED_EXCHANGES = ["bybit", "mock"]


# ============================================================
# ARGUMENTS
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trade-journal",
        description="Exchange trade journal: sync, stream, market structure and retention",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Runtime Modes:
  init-db      - Create journal tables
  full-sync    - Pull executions since the last cursor (needs --user-id)
  quick-sync   - Trailing 24h fills, closed PnL and positions (needs --user-id)
  sync-due     - Full sync of every connection whose interval elapsed
  stream       - Private-stream correlator until stopped (needs --user-id)
  market-data  - Market structure for the active symbol universe
  cleanup      - Retention cleanup

Examples:
  %(prog)s --mode full-sync --user-id 42
  %(prog)s --mode cleanup --dry-run
  %(prog)s --mode market-data --log-format json
        """
    )

    # --------------------------------------------------------
    # Mode Selection
    # --------------------------------------------------------
    parser.add_argument(
        "--mode", "-m",
        type=str,
        choices=[m.value for m in RuntimeMode],
        required=True,
        help="Runtime mode",
    )

    # --------------------------------------------------------
    # Connection Options
    # --------------------------------------------------------
    connection_group = parser.add_argument_group("Connection Options")

    connection_group.add_argument(
        "--user-id",
        type=int,
        metavar="ID",
        help="User whose exchange connection to use",
    )

    connection_group.add_argument(
        "--exchange",
        type=str,
        choices=SUPPORTED_EXCHANGES,
        default="bybit",
        help="Exchange name (default: bybit)",
    )

    # --------------------------------------------------------
    # Execution Options
    # --------------------------------------------------------
    execution_group = parser.add_argument_group("Execution Options")

    execution_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Cleanup only: report what would be deleted",
    )

    execution_group.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="Database URL (default: DATABASE_URL from environment)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Logging format (default: text)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    return parser


# ============================================================
# VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """Cross-flag checks argparse cannot express; empty when the invocation is usable."""
    errors = []
    mode = RuntimeMode(args.mode)

    if mode.needs_connection and args.user_id is None:
        errors.append(f"--user-id is required for {mode.value} mode")

    if args.user_id is not None and args.user_id < 1:
        errors.append("--user-id must be a positive integer")

    if args.dry_run and mode != RuntimeMode.CLEANUP:
        errors.append("--dry-run only applies to cleanup mode")

    return errors


# ============================================================
# DISPATCH
# ============================================================

async def run_mode(runtime: JournalRuntime, args: argparse.Namespace) -> RunSummary:
    mode = RuntimeMode(args.mode)

    if mode == RuntimeMode.INIT_DB:
        return runtime.init_db()
    if mode == RuntimeMode.FULL_SYNC:
        return await runtime.full_sync(args.user_id, args.exchange)
    if mode == RuntimeMode.QUICK_SYNC:
        return await runtime.quick_sync(args.user_id, args.exchange)
    if mode == RuntimeMode.SYNC_DUE:
        return await runtime.sync_due()
    if mode == RuntimeMode.STREAM:
        return await runtime.stream(args.user_id, args.exchange)
    if mode == RuntimeMode.MARKET_DATA:
        return await runtime.collect_market_data()
    return runtime.cleanup(dry_run=args.dry_run)


async def async_main(args: argparse.Namespace, runtime: Optional[JournalRuntime] = None) -> int:
    """Run one mode and print its JSON summary on stdout. Returns the exit code."""
    runtime = runtime or JournalRuntime.from_url(args.database_url)

    try:
        summary = await run_mode(runtime, args)
    except KeyboardInterrupt:
        logging.info(f"{args.mode} interrupted")
        return 130
    except (SyncError, StreamAuthError) as e:
        logging.error(f"{args.mode} failed: {e}")
        return 1
    except Exception as e:
        logging.error(f"{args.mode} aborted: {e}", exc_info=True)
        return 1
    finally:
        runtime.dispose()

    print(json.dumps({"mode": summary.mode.value, "success": summary.success, **summary.details}, default=str))
    return 0 if summary.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Console-script entry point (`trade-journal`)."""
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(args.log_level, args.log_format)
    print_banner(args)

    return asyncio.run(async_main(args))


def print_banner(args: argparse.Namespace) -> None:
    """Print startup banner."""
    print("=" * 60, file=sys.stderr)
    print("  TRADE JOURNAL", file=sys.stderr)
    print("=" * 60, file=sys.stderr)
    print(f"  Mode:       {args.mode}", file=sys.stderr)
    if args.user_id is not None:
        print(f"  User:       {args.user_id}", file=sys.stderr)
        print(f"  Exchange:   {args.exchange}", file=sys.stderr)
    if args.dry_run:
        print("  Dry Run:    True", file=sys.stderr)
    print(f"  Log Level:  {args.log_level}", file=sys.stderr)
    print("=" * 60, file=sys.stderr)


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
