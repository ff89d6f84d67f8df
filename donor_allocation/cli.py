"""
Donor Allocation - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line surface over the allocation engine.

- Loads configuration from environment (.env supported)
- Loads the store from the database
- Runs exactly one engine operation
- Saves what changed when the operation wrote anything,
  under the database write lock

============================================================
USAGE
============================================================
python -m donor_allocation.cli seed
python -m donor_allocation.cli eligible O+
python -m donor_allocation.cli assign REQ002 DON001
python -m donor_allocation.cli confirm REQ002 DON001
python -m donor_allocation.cli --database-url sqlite:///demo.db summary

============================================================
"""

import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

from database import (
    DatabasePersistenceError,
    drop_all_tables,
    create_all_tables,
    get_db_session,
    initialize_database,
    load_store,
    lock_store_revision,
    locked_transaction_scope,
    save_store,
)

from .config import AllocationConfig, load_config_from_env
from .engine import AllocationEngine
from .errors import AllocationError
from .seed import seed_store
from .types import RequestStatus


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_REJECTED = 2


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "WARNING", log_format: str = "text") -> logging.Logger:
    """
    Set up logging on stdout.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("donor_allocation")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="bloodlink",
        description="Blood donor allocation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s seed                         # Reset the database to the demo dataset
  %(prog)s eligible A-                  # Donors who can give A- right now
  %(prog)s create-request HOS001 O+ 2   # New pending request
  %(prog)s assign REQ002 DON001         # Reserve a donor
  %(prog)s confirm REQ002 DON001        # Record the donation
        """,
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy database URL (default: BLOODLINK_DATABASE_URL or sqlite:///bloodlink.db)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Load BLOODLINK_* settings from this .env file",
    )

    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Logging format (default: text)",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    commands.add_parser("seed", help="Replace all data with the demo dataset")
    commands.add_parser("donors", help="List donors")
    commands.add_parser("hospitals", help="List hospitals")

    requests = commands.add_parser("requests", help="List requests")
    requests.add_argument(
        "--status",
        choices=[s.value for s in RequestStatus],
        help="Only requests in this status",
    )
    requests.add_argument("--hospital", metavar="HOSPITAL_ID", help="Only this hospital's requests")

    donations = commands.add_parser("donations", help="List donation records")
    donations.add_argument("--donor", metavar="DONOR_ID")
    donations.add_argument("--request", metavar="REQUEST_ID")
    donations.add_argument("--unverified", action="store_true", help="Only records awaiting approval")

    eligible = commands.add_parser("eligible", help="Eligible donors for a blood group")
    eligible.add_argument("blood_group", metavar="BLOOD_GROUP")

    create = commands.add_parser("create-request", help="Create a request")
    create.add_argument("hospital_id", metavar="HOSPITAL")
    create.add_argument("blood_group", metavar="GROUP")
    create.add_argument("quantity", metavar="QTY", type=int)

    assign = commands.add_parser("assign", help="Reserve donors against a request")
    assign.add_argument("request_id", metavar="REQUEST")
    assign.add_argument("donor_ids", metavar="DONOR", nargs="+")

    cancel = commands.add_parser("cancel", help="Release a donor's active reservation")
    cancel.add_argument("donor_id", metavar="DONOR")

    cancel_request = commands.add_parser("cancel-request", help="Cancel an active request")
    cancel_request.add_argument("request_id", metavar="REQUEST")

    confirm = commands.add_parser("confirm", help="Record a completed donation")
    confirm.add_argument("request_id", metavar="REQUEST")
    confirm.add_argument("donor_id", metavar="DONOR")

    approve = commands.add_parser("approve", help="Admin-approve a donation record")
    approve.add_argument("donation_id", metavar="DONATION")

    verify = commands.add_parser("verify-hospital", help="Mark a hospital verified")
    verify.add_argument("hospital_id", metavar="HOSPITAL")

    register_donor = commands.add_parser("register-donor", help="Register a donor")
    register_donor.add_argument("name")
    register_donor.add_argument("blood_group", metavar="GROUP")
    register_donor.add_argument("--age", type=int)
    register_donor.add_argument("--gender")
    register_donor.add_argument("--phone", default="")
    register_donor.add_argument("--address", default="")

    register_hospital = commands.add_parser("register-hospital", help="Register a hospital")
    register_hospital.add_argument("name")
    register_hospital.add_argument("--contact", default="")
    register_hospital.add_argument("--location", default="")

    status = commands.add_parser("status", help="A donor's eligibility and reservation")
    status.add_argument("donor_id", metavar="DONOR")

    commands.add_parser("summary", help="Overview counts")
    commands.add_parser("audit", help="Check donor/request/ledger consistency")

    return parser


# ============================================================
# COMMANDS
# ============================================================

def _dicts(items: List[Any]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


def _status(engine: AllocationEngine, args: argparse.Namespace) -> Dict[str, Any]:
    status = engine.eligibility_status(args.donor_id)
    active = engine.active_assignment_for(args.donor_id)
    return {
        "donor_id": status.donor_id,
        "eligible": status.eligible,
        "reason": status.reason.value,
        "next_eligible_date": (
            engine.clock.format_iso(status.next_eligible_date)
            if status.next_eligible_date else None
        ),
        "active_request": active.request_id if active else None,
    }


def _cancel(engine: AllocationEngine, args: argparse.Namespace) -> Dict[str, Any]:
    donor, request = engine.cancel_assignment(args.donor_id)
    return {"donor": donor.to_dict(), "request": request.to_dict()}


def _audit(engine: AllocationEngine, args: argparse.Namespace) -> Dict[str, Any]:
    violations = engine.check_invariants()
    return {"consistent": not violations, "violations": violations}


# name -> (handler, writes)
CommandHandler = Callable[[AllocationEngine, argparse.Namespace], Any]

COMMANDS: Dict[str, Tuple[CommandHandler, bool]] = {
    "donors": (lambda e, a: _dicts(e.list_donors()), False),
    "hospitals": (lambda e, a: _dicts(e.list_hospitals()), False),
    "requests": (
        lambda e, a: _dicts(e.list_requests(
            status=RequestStatus(a.status) if a.status else None,
            hospital_id=a.hospital,
        )),
        False,
    ),
    "donations": (
        lambda e, a: _dicts(e.list_donations(
            donor_id=a.donor, request_id=a.request, unverified_only=a.unverified,
        )),
        False,
    ),
    "eligible": (lambda e, a: _dicts(e.find_eligible_donors(a.blood_group)), False),
    "create-request": (
        lambda e, a: e.create_request(a.hospital_id, a.blood_group, a.quantity).to_dict(),
        True,
    ),
    "assign": (lambda e, a: e.assign_donors(a.request_id, a.donor_ids).to_dict(), True),
    "cancel": (_cancel, True),
    "cancel-request": (lambda e, a: e.cancel_request(a.request_id).to_dict(), True),
    "confirm": (lambda e, a: e.confirm_donation(a.request_id, a.donor_id).to_dict(), True),
    "approve": (lambda e, a: e.approve_donation(a.donation_id).to_dict(), True),
    "verify-hospital": (lambda e, a: e.verify_hospital(a.hospital_id).to_dict(), True),
    "register-donor": (
        lambda e, a: e.register_donor(
            a.name, a.blood_group, age=a.age, gender=a.gender,
            phone=a.phone, address=a.address,
        ).to_dict(),
        True,
    ),
    "register-hospital": (
        lambda e, a: e.register_hospital(a.name, contact=a.contact, location=a.location).to_dict(),
        True,
    ),
    "status": (_status, False),
    "summary": (lambda e, a: e.summary().to_dict(), False),
    "audit": (_audit, False),
}


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> AllocationConfig:
    """
    Build engine configuration from environment and CLI arguments.

    --database-url overrides BLOODLINK_DATABASE_URL.
    """
    config = load_config_from_env(args.env_file)
    if args.database_url:
        config.database_url = args.database_url
    return config


def run_command(engine: AllocationEngine, args: argparse.Namespace) -> Any:
    """
    Load, run one command, and save if it wrote anything.

    A writing command holds the database write lock from load to
    save, so concurrent invocations apply one after another. The
    save also checks the store revision read at load time.

    Returns:
        JSON-serializable command result
    """
    if args.command == "seed":
        seed_store(engine.store)
        drop_all_tables()
        create_all_tables()
        with locked_transaction_scope() as session:
            counts = save_store(session, engine.store)
        return {"seeded": counts}

    handler, writes = COMMANDS[args.command]

    if not writes:
        with get_db_session() as session:
            load_store(session, engine.store)
        return handler(engine, args)

    with locked_transaction_scope() as session:
        revision = lock_store_revision(session)
        load_store(session, engine.store)
        baseline = engine.store.snapshot()
        result = handler(engine, args)
        save_store(session, engine.store, baseline, expected_revision=revision)

    return result


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code (0 ok, 1 failure, 2 rejected by the engine)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_format)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        initialize_database(config.database_url)
        engine = AllocationEngine(config=config)
        result = run_command(engine, args)
    except AllocationError as e:
        print(f"error [{e.code}]: {e.message}", file=sys.stderr)
        return EXIT_REJECTED
    except DatabasePersistenceError as e:
        print(f"error [DATABASE]: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(json.dumps(result, indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
