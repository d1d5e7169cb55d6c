"""
Calendar Sync Reconciler for the Shift Reconciliation System

Compares externally observed calendar events with the shifts mirrored from
them and raises change proposals through the approval workflow. It never
writes to the ShiftStore directly. Cycles run on demand or from a background
thread that is fed owner triggers through a queue.
"""

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .approval_workflow import ApprovalWorkflow, WorkflowOutcome
from .change_log import ChangeLog
from .errors import CalendarProviderError, StorageIOError
from .models import (
    ChangeProposal, Decision, ExternalEvent, ProposalKind, ProposalOrigin, ReasonCode,
    Shift, SourceOrigin
)
from .shift_store import ShiftStore, StoreSnapshot

logger = logging.getLogger(__name__)

# Marker remembered for a mirrored shift whose event disappeared
VANISHED = ("vanished",)


def _overlaps_window(event: ExternalEvent, start_date: date, end_date: date) -> bool:
    return event.start.date() <= end_date and event.end.date() >= start_date


class StaticCalendarProvider:
    """In-memory calendar feed, for development and tests"""

    def __init__(self, events: Optional[Iterable[ExternalEvent]] = None):
        self._lock = threading.Lock()
        self._events: Dict[str, ExternalEvent] = {}
        for event in events or []:
            self.add_event(event)

    def add_event(self, event: ExternalEvent):
        if event.owner_id is None:
            raise ValueError(f"Event {event.external_id} has no owner")
        with self._lock:
            self._events[event.external_id] = event

    def remove_event(self, external_id: str):
        with self._lock:
            self._events.pop(external_id, None)

    def list_events(self, owner_id: str, start_date: date, end_date: date) -> List[ExternalEvent]:
        with self._lock:
            events = list(self._events.values())
        return sorted(
            (e for e in events if e.owner_id == owner_id and _overlaps_window(e, start_date, end_date)),
            key=lambda e: (e.start, e.external_id)
        )


class JsonFileCalendarProvider:
    """Calendar feed read from a JSON file of the form {"events": [...]}"""

    def __init__(self, events_file: str):
        self.events_file = Path(events_file)

    def list_events(self, owner_id: str, start_date: date, end_date: date) -> List[ExternalEvent]:
        try:
            with open(self.events_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            events = [ExternalEvent.from_dict(item) for item in data.get("events", [])]
        except (IOError, OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            raise CalendarProviderError(f"Cannot read calendar feed {self.events_file}: {e}") from e
        return sorted(
            (e for e in events if e.owner_id == owner_id and _overlaps_window(e, start_date, end_date)),
            key=lambda e: (e.start, e.external_id)
        )


def event_shape(event: ExternalEvent) -> Optional[Tuple[str, Optional[str], Optional[str], str]]:
    """
    Map an event onto shift fields as (date, start, end, label).

    Midnight-aligned events lasting whole days become all-day shifts. Timed
    events longer than a day cannot be represented and return None.
    """
    duration = event.end - event.start
    if duration <= timedelta(0):
        return None
    if event.start.time() == time.min and duration % timedelta(days=1) == timedelta(0):
        return event.start.date().isoformat(), None, None, event.title
    if duration >= timedelta(days=1):
        return None
    return (
        event.start.date().isoformat(),
        event.start.time().isoformat(timespec="minutes"),
        event.end.time().isoformat(timespec="minutes"),
        event.title,
    )


def shift_shape(shift: Shift) -> Tuple[str, Optional[str], Optional[str], str]:
    return (
        shift.date.isoformat(),
        shift.start_time.isoformat(timespec="minutes") if shift.start_time else None,
        shift.end_time.isoformat(timespec="minutes") if shift.end_time else None,
        shift.label,
    )


def _proposal_shape(proposal: ChangeProposal) -> Tuple:
    if proposal.kind is ProposalKind.DELETE:
        return VANISHED
    payload = proposal.payload
    return (payload.get("date"), payload.get("start_time"), payload.get("end_time"),
            payload.get("label", ""))


@dataclass
class ReconciliationReport:
    """Result of one reconciliation cycle for one owner"""
    owner_id: str
    start_date: date
    end_date: date
    started_at: datetime = field(default_factory=datetime.now)
    proposals: List[ChangeProposal] = field(default_factory=list)
    outcomes: List[WorkflowOutcome] = field(default_factory=list)
    failures: List[Tuple[ChangeProposal, Exception]] = field(default_factory=list)
    skipped_events: List[str] = field(default_factory=list)

    @property
    def committed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.committed)

    @property
    def pending(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.pending)

    @property
    def rejected(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.rejected)

    def summary(self) -> str:
        return (
            f"{self.owner_id} {self.start_date}..{self.end_date}: "
            f"{len(self.proposals)} proposals, {self.committed} committed, "
            f"{self.pending} pending, {self.rejected} rejected, {len(self.failures)} failed"
        )


class CalendarSyncReconciler:
    """Aligns the shift store with an external calendar through the workflow"""

    def __init__(self, store: ShiftStore, workflow: ApprovalWorkflow, provider,
                 change_log: Optional[ChangeLog] = None):
        self.store = store
        self.workflow = workflow
        self.provider = provider
        self.change_log = change_log if change_log is not None else workflow.change_log
        self._cycle_lock = threading.Lock()
        self._proposals: "queue.Queue[ChangeProposal]" = queue.Queue()
        self._triggers: "queue.Queue[Optional[str]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._owner_ids: List[str] = []
        self._window_days = 30
        # external id -> shape already proposed and not committed
        self._handled: Dict[str, Tuple] = {}
        # external id -> newest sync proposal raised for it
        self._latest_proposal: Dict[str, str] = {}
        self._seen_sequence = 0
        self.last_reports: Dict[str, ReconciliationReport] = {}
        self.last_error: Optional[Exception] = None
        self._catch_up()
        logger.info(f"Seeded {len(self._handled)} unresolved calendar events from the change log")

    def _catch_up(self):
        """
        Fold change log entries written since the last look into the
        handled-event memory.

        Pending sync proposals are resolved by approve, deny or cancel outside
        any cycle, so the log rather than submit outcomes is what the memory
        follows.
        """
        for entry in self.change_log.read_from(self._seen_sequence + 1):
            self._seen_sequence = entry.sequence_number
            proposal = entry.proposal
            if proposal.origin is not ProposalOrigin.EXTERNAL_SYNC or not proposal.external_id:
                continue
            if entry.references_sequence is None:
                self._latest_proposal[proposal.external_id] = proposal.proposal_id
            elif self._latest_proposal.get(proposal.external_id) != proposal.proposal_id:
                # Resolution of a proposal a newer one has superseded
                continue
            self._remember(proposal, entry.decision, entry.reason)

    def _remember(self, proposal: ChangeProposal, decision: Decision,
                  reason: Optional[ReasonCode] = None):
        # Lost races are planned again next cycle against fresh state
        if decision is Decision.COMMITTED or reason is ReasonCode.CONCURRENT_MODIFICATION:
            self._handled.pop(proposal.external_id, None)
        else:
            self._handled[proposal.external_id] = _proposal_shape(proposal)

    # Planning
    def plan(self, owner_id: str, start_date: date, end_date: date,
             events: Sequence[ExternalEvent],
             snapshot: Optional[StoreSnapshot] = None,
             skipped: Optional[List[str]] = None) -> List[ChangeProposal]:
        """
        Work out which proposals would bring the store in line with the events.

        Unmirrored events become creates, deliberately deleted mirrors become
        creates of the old shift id (resurrections, which need approval),
        moved events become modifies and mirrors whose event vanished from
        the window become deletes. Events already proposed in their current
        shape are left alone.
        """
        snapshot = snapshot or self.store.snapshot()
        proposals = []
        seen_ids = set()

        for event in events:
            seen_ids.add(event.external_id)
            shape = event_shape(event)
            if shape is None:
                logger.warning(f"Calendar event {event.external_id} cannot be mapped to a shift")
                if skipped is not None:
                    skipped.append(event.external_id)
                continue

            mirrored = snapshot.shift_for_external_id(event.external_id)
            if mirrored is not None and shift_shape(mirrored) == shape:
                self._handled.pop(event.external_id, None)
                continue
            if self._handled.get(event.external_id) == shape:
                continue

            event_date, start, end, title = shape
            if mirrored is not None:
                proposals.append(ChangeProposal(
                    kind=ProposalKind.MODIFY,
                    target_shift_id=mirrored.shift_id,
                    payload={"date": event_date, "start_time": start, "end_time": end,
                             "label": title, "external_id": event.external_id},
                    origin=ProposalOrigin.EXTERNAL_SYNC,
                    base_version=mirrored.version,
                    requested_by=owner_id
                ))
                continue

            deleted_id = snapshot.tombstone_for_external_id(event.external_id)
            payload = {
                "shift_id": deleted_id or f"sync-{event.external_id}",
                "date": event_date,
                "start_time": start,
                "end_time": end,
                "label": title,
                "owner_id": owner_id,
                "external_id": event.external_id,
                "source_origin": SourceOrigin.EXTERNAL_SYNC.value,
            }
            proposals.append(ChangeProposal(
                kind=ProposalKind.CREATE,
                target_shift_id=deleted_id,
                payload=payload,
                origin=ProposalOrigin.EXTERNAL_SYNC,
                base_version=snapshot.last_version(payload["shift_id"]),
                requested_by=owner_id
            ))

        for shift in snapshot.list_by_owner_and_range(owner_id, start_date, end_date):
            if shift.source_origin is not SourceOrigin.EXTERNAL_SYNC or not shift.external_id:
                continue
            if shift.external_id in seen_ids or self._handled.get(shift.external_id) == VANISHED:
                continue
            proposals.append(ChangeProposal(
                kind=ProposalKind.DELETE,
                target_shift_id=shift.shift_id,
                payload={"external_id": shift.external_id},
                origin=ProposalOrigin.EXTERNAL_SYNC,
                base_version=shift.version,
                requested_by=owner_id
            ))

        return proposals

    # Cycles
    def run_cycle(self, owner_id: str, start_date: date, end_date: date) -> ReconciliationReport:
        """Fetch events, plan proposals and push them through the workflow"""
        with self._cycle_lock:
            self._catch_up()
            report = ReconciliationReport(owner_id, start_date, end_date)
            events = [
                e if e.owner_id is not None
                else ExternalEvent(e.external_id, e.start, e.end, e.title, owner_id)
                for e in self.provider.list_events(owner_id, start_date, end_date)
            ]
            for proposal in self.plan(owner_id, start_date, end_date, events,
                                      skipped=report.skipped_events):
                report.proposals.append(proposal)
                self._proposals.put(proposal)
            self._drain(report, events)
            self._catch_up()

        self.last_reports[owner_id] = report
        if report.failures:
            logger.error(f"Reconciliation left {len(report.failures)} proposals unsubmitted: "
                         f"{report.summary()}")
        else:
            logger.info(f"Reconciliation finished: {report.summary()}")
        return report

    def _drain(self, report: ReconciliationReport, events: List[ExternalEvent]):
        while True:
            try:
                proposal = self._proposals.get_nowait()
            except queue.Empty:
                return
            outcome = self._submit_with_retry(proposal, events, report)
            if outcome is not None:
                report.outcomes.append(outcome)

    def _submit_with_retry(self, proposal: ChangeProposal, events: List[ExternalEvent],
                           report: ReconciliationReport) -> Optional[WorkflowOutcome]:
        # One retry per cycle; a second failure is reported, not retried again
        for attempt in (1, 2):
            try:
                return self.workflow.submit(proposal, external_events=events)
            except StorageIOError as e:
                if attempt == 1:
                    logger.warning(f"Submitting sync proposal {proposal.proposal_id} failed, "
                                   f"retrying once: {e}")
                    continue
                logger.error(f"Sync proposal {proposal.proposal_id} failed twice: {e}")
                report.failures.append((proposal, e))
        return None

    # Background operation
    def start(self, owner_ids: Iterable[str], interval_seconds: float = 300,
              window_days: int = 30):
        """Run cycles for every owner each interval, and for one owner on notify()"""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Reconciler is already running")
        self._owner_ids = list(owner_ids)
        self._window_days = window_days
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, args=(interval_seconds,), name="calendar-sync", daemon=True
        )
        self._thread.start()
        logger.info(f"Calendar sync started for {len(self._owner_ids)} owners "
                    f"every {interval_seconds}s")

    def notify(self, owner_id: str):
        """Request a cycle for one owner, e.g. on a provider push notification"""
        self._triggers.put(owner_id)

    def stop(self, timeout: Optional[float] = 10.0):
        self._stop_event.set()
        self._triggers.put(None)
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Calendar sync stopped")

    def _window(self) -> Tuple[date, date]:
        today = date.today()
        return today, today + timedelta(days=self._window_days)

    def _run_loop(self, interval_seconds: float):
        while not self._stop_event.is_set():
            try:
                owner_id = self._triggers.get(timeout=interval_seconds)
                if owner_id is None:
                    continue
                owners = [owner_id]
            except queue.Empty:
                owners = list(self._owner_ids)

            for owner in owners:
                if self._stop_event.is_set():
                    break
                start_date, end_date = self._window()
                try:
                    self.run_cycle(owner, start_date, end_date)
                except Exception as e:
                    # Keep the loop alive; the failure is surfaced through last_error
                    self.last_error = e
                    logger.error(f"Reconciliation cycle for {owner} failed: {e}", exc_info=True)
