"""
Main entry point for the Material Lot Tracker command line.

Commands:
    init-db            Create the database and its tables
    lots MATERIAL_ID   List a material's available lots in FIFO order
    reconcile          Check every lot against the audit ledger
"""

import argparse
import logging
import sys
import traceback
from typing import List, Optional

from src.services.database import initialize_app_database
from src.services.engine import create_consumption_engine
from src.services.exceptions import ServiceError
from src.utils.config import get_config


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_init_db(args: argparse.Namespace) -> int:
    initialize_app_database()
    print("Database initialized successfully")
    return 0


def cmd_lots(args: argparse.Namespace) -> int:
    engine = create_consumption_engine()
    lots = engine.lot_store.list_available(args.material_id)
    if not lots:
        print(f"No available lots for material {args.material_id}")
        return 0

    print(f"{'ID':>6}  {'Lot':<20} {'Intake':<10}  {'Remaining':>12} {'Unit cost':>10}")
    for lot in lots:
        print(
            f"{lot.id:>6}  {lot.lot_number:<20} {lot.intake_date.isoformat():<10}  "
            f"{lot.remaining_quantity:>12} {lot.unit_cost:>10}"
        )
    total = engine.validator.material_available(args.material_id)
    print(f"Total available: {total}")
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    engine = create_consumption_engine()
    discrepancies = engine.audit_ledger.reconcile_all()
    incomplete = engine.audit_ledger.incomplete_rollbacks()

    for result in discrepancies:
        print(f"Lot {result.lot_number} (ID {result.lot_id}):")
        for issue in result.issues:
            print(f"  - {issue}")
    for record in incomplete:
        print(
            f"Rollback {record.id} for {record.reference_id}: "
            f"{len(record.restores)} of {record.input_count} restores recorded"
        )

    if discrepancies or incomplete:
        print(
            f"{len(discrepancies)} lot discrepancy(ies), "
            f"{len(incomplete)} incomplete rollback(s)"
        )
        return 1
    print("All lots reconcile with the audit ledger")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lot-tracker",
        description="Material lot inventory and consumption ledger",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    lots_parser = subparsers.add_parser("lots", help="list available lots of a material")
    lots_parser.add_argument("material_id", type=int)
    lots_parser.set_defaults(func=cmd_lots)

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="check lot quantities against the audit ledger"
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command line entry point.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    config = get_config()
    logging.getLogger(__name__).debug(
        f"{config.app_name} v{config.app_version} ({config.environment})"
    )

    try:
        return args.func(args)
    except ServiceError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        traceback.print_exc()
        return 2


if __name__ == "__main__":
    sys.exit(main())
