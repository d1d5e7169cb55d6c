"""
Main Entry Point for the Shift Reconciliation System

Wires settings, the shift store, the change log and the approval workflow
together and exposes them as a small command line tool.
"""

import argparse
import logging
import sys
import traceback
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from shift_reconciler.approval_workflow import ApprovalWorkflow, WorkflowOutcome
from shift_reconciler.calendar_sync import CalendarSyncReconciler, JsonFileCalendarProvider
from shift_reconciler.change_log import ChangeLog, ChangeLogRetentionPolicy
from shift_reconciler.config import ReconcilerSettings, load_settings
from shift_reconciler.errors import ReconcilerError
from shift_reconciler.reporting import ExportManager
from shift_reconciler.shift_store import ShiftStore


def setup_logging(level: str = "INFO", log_dir: str = "logs"):
    """Setup application logging"""
    log_path = Path(log_dir)
    log_path.mkdir(exist_ok=True)

    log_file = log_path / f"shift_reconciler_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Global exception handler"""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logger = logging.getLogger(__name__)
    logger.error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shift-reconciler",
        description="Reconcile shift changes against the change log and external calendars"
    )
    parser.add_argument("--settings", help="JSON settings file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show store and change log counts")

    export = subparsers.add_parser("export", help="Export the change log")
    export.add_argument("--format", dest="format_type", default="all",
                        choices=["csv", "excel", "pdf", "all"])
    export.add_argument("--output", default="exports",
                        help="Output file, or directory when exporting all formats")
    export.add_argument("--retention",
                        choices=[policy.value for policy in ChangeLogRetentionPolicy],
                        help="Only export entries inside this window")

    pending = subparsers.add_parser("pending", help="List proposals awaiting approval")
    pending.add_argument("--owner", help="Only proposals touching this owner's shifts")

    for name, help_text in (("approve", "Approve a pending proposal"),
                            ("deny", "Deny a pending proposal")):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("proposal_id")

    cancel = subparsers.add_parser("cancel", help="Withdraw a pending proposal")
    cancel.add_argument("proposal_id")
    cancel.add_argument("--by", dest="requested_by", help="Owner withdrawing the proposal")

    undo = subparsers.add_parser("undo", help="Revert a committed change log entry")
    undo.add_argument("sequence_number", type=int)
    undo.add_argument("--by", dest="requested_by")

    reconcile = subparsers.add_parser("reconcile", help="Run one calendar sync cycle")
    reconcile.add_argument("owner_ids", nargs="+")
    reconcile.add_argument("--days", type=int, help="Window length from today")

    return parser


class ShiftReconcilerApp:
    """Main application class"""

    def __init__(self, settings: ReconcilerSettings):
        self.logger = logging.getLogger(__name__)
        self.settings = settings
        self.store = None
        self.change_log = None
        self.workflow = None
        self.reconciler = None
        self.export_manager = None

    def initialize(self):
        """Initialize application components"""
        try:
            self.logger.info("Initializing Shift Reconciler")

            data_dir = Path(self.settings.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Persistent data directory: {data_dir}")

            self.store = ShiftStore(str(self.settings.shift_store_path),
                                    self.settings.allow_multiple_all_day)
            self.change_log = ChangeLog(str(self.settings.change_log_path))

            provider = None
            if self.settings.calendar_feed_file:
                provider = JsonFileCalendarProvider(self.settings.calendar_feed_file)
                self.logger.info(f"Calendar feed: {self.settings.calendar_feed_file}")

            self.workflow = ApprovalWorkflow(self.store, self.change_log, provider)
            if provider is not None:
                self.reconciler = CalendarSyncReconciler(self.store, self.workflow, provider,
                                                         self.change_log)
            self.export_manager = ExportManager(self.change_log)
            self.logger.info("Services initialized")
            return True

        except ReconcilerError as e:
            self.logger.error(f"Failed to initialize application: {e}")
            self.logger.error(traceback.format_exc())
            return False

    def run(self, args: argparse.Namespace) -> bool:
        """Run one command"""
        try:
            if not self.initialize():
                return False
            handler = getattr(self, f"cmd_{args.command}")
            return handler(args)

        except ReconcilerError as e:
            self.logger.error(f"{args.command} failed: {e}")
            print(f"Error: {e}")
            return False

        finally:
            self.cleanup()

    # Commands
    def cmd_status(self, args) -> bool:
        pending = self.workflow.pending()
        print(f"Shifts: {len(self.store)}")
        print(f"Change log entries: {self.change_log.latest()}")
        print(f"Awaiting approval: {len(pending)}")
        return True

    def cmd_export(self, args) -> bool:
        retention = (ChangeLogRetentionPolicy(args.retention) if args.retention
                     else self.settings.retention)
        if args.format_type == "all":
            results = self.export_manager.batch_export(args.output, retention_policy=retention)
            for format_type, ok in results.items():
                print(f"{format_type}: {'ok' if ok else 'failed'}")
            return all(results.values())

        ok = self.export_manager.export_change_log(args.format_type, args.output, retention)
        print(f"{args.format_type}: {'ok' if ok else 'failed'} ({args.output})")
        return ok

    def cmd_pending(self, args) -> bool:
        instances = self.workflow.pending(args.owner)
        if not instances:
            print("No proposals awaiting approval")
        for instance in instances:
            codes = ", ".join(code.value for code in instance.verdict.reason_codes)
            print(f"{instance.proposal_id}  {instance.proposal.kind.value:<7} "
                  f"{', '.join(sorted(instance.owner_ids))}  {codes}")
        return True

    def cmd_approve(self, args) -> bool:
        return self._report(self.workflow.approve(args.proposal_id))

    def cmd_deny(self, args) -> bool:
        return self._report(self.workflow.deny(args.proposal_id))

    def cmd_cancel(self, args) -> bool:
        return self._report(self.workflow.cancel(args.proposal_id, args.requested_by))

    def cmd_undo(self, args) -> bool:
        return self._report(self.workflow.undo(args.sequence_number, args.requested_by))

    def cmd_reconcile(self, args) -> bool:
        if self.reconciler is None:
            print("No calendar feed configured (calendarFeedFile)")
            return False
        days = args.days or self.settings.sync_window_days
        start_date = date.today()
        end_date = start_date + timedelta(days=days)
        ok = True
        for owner_id in args.owner_ids:
            report = self.reconciler.run_cycle(owner_id, start_date, end_date)
            print(report.summary())
            ok = ok and not report.failures
        return ok

    def _report(self, outcome: WorkflowOutcome) -> bool:
        line = f"{outcome.proposal_id}: {outcome.state.value}"
        if outcome.reason is not None:
            line += f" ({outcome.reason.value})"
        if outcome.sequence_number is not None:
            line += f", change log #{outcome.sequence_number}"
        print(line)
        return True

    def cleanup(self):
        """Cleanup application resources"""
        if self.reconciler is not None:
            self.reconciler.stop(timeout=1.0)
        if self.store is not None and self.store.unsaved_changes:
            try:
                self.store.save_data()
            except ReconcilerError as e:
                self.logger.error(f"Shift store still behind the change log on exit: {e}")


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    sys.excepthook = handle_exception

    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.settings)
    except ReconcilerError as e:
        print(f"Error: {e}")
        sys.exit(2)

    logger = setup_logging(settings.log_level)
    logger.info("=" * 50)
    logger.info(f"Shift Reconciler: {args.command}")
    logger.info("=" * 50)

    app = ShiftReconcilerApp(settings)
    success = app.run(args)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
