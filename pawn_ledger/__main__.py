"""Operator entry point: ``python -m pawn_ledger sweep``"""

import argparse
import json
import sys
from datetime import date
from typing import List, Optional

from .config import get_config
from .exceptions import LedgerError
from .logging_config import setup_logging, get_logger, log_action
from .system import create_ledger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pawn_ledger",
        description="Pawnshop loan servicing ledger maintenance tasks",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser(
        "sweep",
        help="Mark past-due loans overdue or defaulted",
    )
    sweep.add_argument(
        "--branch",
        default=None,
        help="Branch to sweep (default: all branches)",
    )
    sweep.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Evaluation date as YYYY-MM-DD (default: today)",
    )
    sweep.add_argument(
        "--late-fees",
        action="store_true",
        help="Also accrue late fees on overdue loans",
    )
    sweep.add_argument(
        "--database",
        default=None,
        help="SQLite database path (default: PAWN_DATABASE_PATH)",
    )
    return parser


def run_sweep(args: argparse.Namespace) -> dict:
    config = get_config()
    if args.database:
        config = config.model_copy(update={"database_path": args.database})

    ledger = create_ledger(config=config, use_sqlite=True)
    try:
        as_of = args.as_of or date.today()
        result = ledger.loans.update_overdue_status(branch_id=args.branch, as_of=as_of)
        summary = dict(result.to_dict(), as_of=as_of.isoformat(), branch=args.branch)
        if args.late_fees:
            summary["late_fees_updated"] = ledger.loans.accrue_late_fees(branch_id=args.branch, as_of=as_of)
        return summary
    finally:
        ledger.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger = get_logger("pawn_ledger.cli")

    try:
        summary = run_sweep(args)
    except LedgerError as e:
        log_action(logger, "error", f"Sweep failed: {e}", action="overdue_sweep", exc_info=True)
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
