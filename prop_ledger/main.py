"""
PropLedger — command-line entry point for the reconciliation engine.

Builds the store, template store, locks and journal once per process and
hands them to the reconciler and maintenance services.

Usage:
    # Register the accounts listed under `accounts:` in the config
    python -m prop_ledger.main --config config/default.yaml register-account

    # Merge one EA snapshot (JSON) and evaluate the account
    python -m prop_ledger.main reconcile snapshots/2958.json

    # Import closed trades from an MT5 history export
    python -m prop_ledger.main import-csv 2958 ReportHistory-2958.csv

    # Re-evaluate phase rules without merging
    python -m prop_ledger.main evaluate 2958

    # Administrative
    python -m prop_ledger.main delete-ticket 2958 162527
    python -m prop_ledger.main assign-template 2958 ftmo-50k --version 1
    python -m prop_ledger.main reset-phase 2958 PHASE_1
    python -m prop_ledger.main pending [--purge]
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from prop_ledger.compliance.template_store import TemplateStore
from prop_ledger.config import AppConfig, load_config
from prop_ledger.errors import LedgerError
from prop_ledger.ledger.report_import import read_positions_report
from prop_ledger.ledger.schemas import Phase
from prop_ledger.ledger_store.maintenance import LedgerMaintenance
from prop_ledger.ledger_store.sqlite_store import SqliteLedgerStore
from prop_ledger.monitor.trade_journal import LedgerJournal
from prop_ledger.sync.account_lock import AccountLockRegistry
from prop_ledger.sync.reconciler import LedgerReconciler, PassResult


class PropLedger:
    """Process-wide wiring of the ledger services.

    Usage:
        app = PropLedger(config)
        result = app.reconciler.reconcile(snapshot)
        app.close()
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.store = SqliteLedgerStore(config.ledger.db_path)
        self.templates = TemplateStore(config.templates.directory)
        self.locks = AccountLockRegistry()
        self.journal = LedgerJournal(config.journal.path) if config.journal.enabled else None
        self.reconciler = LedgerReconciler(
            self.store,
            self.templates,
            config=config.reconciliation,
            locks=self.locks,
            journal=self.journal,
        )
        self.maintenance = LedgerMaintenance(self.store, self.templates, self.locks)

    def register_accounts(self) -> int:
        for seed in self.config.accounts:
            self.maintenance.register_account(seed, at=datetime.now(timezone.utc))
        return len(self.config.accounts)

    def close(self) -> None:
        self.store.close()


def setup_logging(config: AppConfig) -> None:
    """Configure loguru logging from config."""
    log_dir = Path(config.logging.file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        level=config.logging.level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level:8}</level> | {message}",
    )
    logger.add(
        config.logging.file,
        level=config.logging.level,
        rotation=config.logging.rotation,
        retention=config.logging.retention,
        encoding="utf-8",
    )


def _print_result(result: PassResult) -> None:
    payload = result.counts()
    if result.phase_state is not None:
        payload["phase"] = result.phase_state.current_phase.value
    payload["violations"] = [v.model_dump(mode="json") for v in result.violations]
    payload["diagnostics"] = result.diagnostics
    if result.figures is not None:
        logger.info(result.figures.summary())
    print(json.dumps(payload, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PropLedger — trade reconciliation & rule evaluation")
    parser.add_argument(
        "--config",
        default="config/default.yaml",
        help="Path to config YAML",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("register-account", help="Register the accounts listed in the config")

    reconcile = commands.add_parser("reconcile", help="Merge an EA snapshot JSON file")
    reconcile.add_argument("snapshot", help="Snapshot JSON file")

    import_csv = commands.add_parser("import-csv", help="Import closed trades from an MT5 export")
    import_csv.add_argument("account_id")
    import_csv.add_argument("path")
    import_csv.add_argument("--sep", default=",")
    import_csv.add_argument("--decimal-comma", action="store_true")

    evaluate = commands.add_parser("evaluate", help="Re-evaluate phase rules")
    evaluate.add_argument("account_id")

    delete = commands.add_parser("delete-ticket", help="Delete a ticket and its renamed legs")
    delete.add_argument("account_id")
    delete.add_argument("ticket_id")

    assign = commands.add_parser("assign-template", help="Bind an account to a rule template")
    assign.add_argument("account_id")
    assign.add_argument("template_id")
    assign.add_argument("--version", type=int, default=None)

    reset = commands.add_parser("reset-phase", help="Force an account into a phase")
    reset.add_argument("account_id")
    reset.add_argument("phase", choices=[p.value for p in Phase])
    reset.add_argument("--start-balance", default=None)

    pending = commands.add_parser("pending", help="List queued conflicts")
    pending.add_argument("--account", default=None)
    pending.add_argument("--discard", type=int, default=None, help="Discard one entry by id")
    pending.add_argument("--purge", action="store_true", help="Purge entries past retention")
    return parser


def run(args: argparse.Namespace, app: PropLedger) -> int:
    """Execute one CLI command. Returns the process exit code."""
    if args.command == "register-account":
        count = app.register_accounts()
        logger.info("PropLedger: {} accounts checked", count)
    elif args.command == "reconcile":
        with open(args.snapshot, "r", encoding="utf-8") as f:
            snapshot = json.load(f)
        _print_result(app.reconciler.reconcile(snapshot))
    elif args.command == "import-csv":
        descriptors = read_positions_report(args.path, sep=args.sep, decimal_comma=args.decimal_comma)
        _print_result(app.reconciler.import_closed(args.account_id, descriptors))
    elif args.command == "evaluate":
        _print_result(app.reconciler.evaluate(args.account_id))
    elif args.command == "delete-ticket":
        app.maintenance.delete_ticket(args.account_id, args.ticket_id)
    elif args.command == "assign-template":
        app.maintenance.assign_template(args.account_id, args.template_id, args.version)
    elif args.command == "reset-phase":
        start = Decimal(args.start_balance) if args.start_balance is not None else None
        app.maintenance.reset_phase(args.account_id, Phase(args.phase), start_balance=start)
    elif args.command == "pending":
        if args.discard is not None:
            app.maintenance.discard_pending(args.discard)
        if args.purge:
            app.maintenance.purge_pending()
        print(json.dumps(app.maintenance.list_pending(args.account), indent=2, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)

    # Load environment variables
    load_dotenv()

    config = load_config(args.config)
    setup_logging(config)
    logger.info("PropLedger starting — {} (db {})", args.command, config.ledger.db_path)

    app = PropLedger(config)
    try:
        return run(args, app)
    except LedgerError as e:
        logger.error("PropLedger: {} failed — {}", args.command, e)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
