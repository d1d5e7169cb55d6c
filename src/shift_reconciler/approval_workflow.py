"""
Approval Workflow for the Shift Reconciliation System

State machine that takes a change proposal from submission to a terminal
committed or rejected state. It is the only path that writes to the
ShiftStore, and every decision it takes is appended to the ChangeLog.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from .change_log import ChangeLog
from .conflict_detector import detect_conflicts, project_proposal
from .errors import (
    HardConflictError, InvalidTransitionError, NotFoundError, ProposalNotFoundError,
    ShiftNotFoundError, StaleVersionError, StorageIOError, WorkflowError
)
from .models import (
    PAYLOAD_FIELDS, ChangeLogEntry, ChangeProposal, ConflictStatus, ConflictVerdict,
    Decision, ExternalEvent, ProposalKind, ReasonCode, Shift
)
from .shift_store import ShiftStore, StoreSnapshot

logger = logging.getLogger(__name__)


class CalendarProvider(Protocol):
    """Read-only source of externally observed calendar events"""

    def list_events(self, owner_id: str, start_date: date,
                    end_date: date) -> Sequence[ExternalEvent]:
        ...


class WorkflowState(Enum):
    SUBMITTED = "submitted"
    EVALUATED = "evaluated"
    AUTO_COMMITTED = "autoCommitted"
    PENDING_APPROVAL = "pendingApproval"
    APPROVED = "approved"
    DENIED = "denied"
    COMMITTED = "committed"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({WorkflowState.COMMITTED, WorkflowState.REJECTED})

ALLOWED_TRANSITIONS = {
    WorkflowState.SUBMITTED: {WorkflowState.EVALUATED},
    WorkflowState.EVALUATED: {
        WorkflowState.AUTO_COMMITTED,
        WorkflowState.PENDING_APPROVAL,
        WorkflowState.REJECTED,
    },
    WorkflowState.AUTO_COMMITTED: {WorkflowState.COMMITTED, WorkflowState.REJECTED},
    # Rejected straight from pending is a cancellation by the owner
    WorkflowState.PENDING_APPROVAL: {
        WorkflowState.APPROVED,
        WorkflowState.DENIED,
        WorkflowState.REJECTED,
    },
    WorkflowState.APPROVED: {WorkflowState.COMMITTED, WorkflowState.REJECTED},
    WorkflowState.DENIED: {WorkflowState.REJECTED},
    WorkflowState.COMMITTED: set(),
    WorkflowState.REJECTED: set(),
}


@dataclass
class WorkflowInstance:
    """Live state of one proposal's trip through the workflow"""
    proposal: ChangeProposal
    state: WorkflowState = WorkflowState.SUBMITTED
    verdict: Optional[ConflictVerdict] = None
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None
    history: List[WorkflowState] = field(default_factory=lambda: [WorkflowState.SUBMITTED])
    reason: Optional[ReasonCode] = None
    pending_sequence: Optional[int] = None
    owner_ids: Set[str] = field(default_factory=set)

    @property
    def proposal_id(self) -> str:
        return self.proposal.proposal_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class WorkflowOutcome:
    """What a workflow command achieved"""
    proposal_id: str
    state: WorkflowState
    verdict: ConflictVerdict
    reason: Optional[ReasonCode] = None
    sequence_number: Optional[int] = None
    shifts: Tuple[Shift, ...] = ()
    proposal: Optional[ChangeProposal] = None

    @property
    def committed(self) -> bool:
        return self.state is WorkflowState.COMMITTED

    @property
    def rejected(self) -> bool:
        return self.state is WorkflowState.REJECTED

    @property
    def pending(self) -> bool:
        return self.state is WorkflowState.PENDING_APPROVAL

    def raise_for_status(self):
        """Turn a rejection into the matching exception"""
        if not self.rejected:
            return
        if self.reason is ReasonCode.CONCURRENT_MODIFICATION:
            shift_id = self.proposal.shift_ids[0] if self.proposal else self.proposal_id
            base = self.proposal.base_version if self.proposal else None
            raise StaleVersionError(shift_id, base, None, "concurrent modification")
        if self.verdict.status is ConflictStatus.HARD_CONFLICT:
            raise HardConflictError(self.proposal_id, self.verdict.reason_codes)


class ApprovalWorkflow:
    """Routes proposals through conflict detection, approval and commit"""

    def __init__(self, store: ShiftStore, change_log: ChangeLog,
                 calendar_provider: Optional[CalendarProvider] = None,
                 allow_multiple_all_day: Optional[bool] = None):
        self.store = store
        self.change_log = change_log
        self.calendar_provider = calendar_provider
        if allow_multiple_all_day is None:
            allow_multiple_all_day = store.allow_multiple_all_day
        self.allow_multiple_all_day = allow_multiple_all_day
        self._lock = threading.Lock()
        self._open: Dict[str, WorkflowInstance] = {}
        self._restore_pending()

    def _restore_pending(self):
        """Reopen proposals whose pending entry has no terminal entry yet"""
        held: Dict[int, ChangeLogEntry] = {}
        for entry in self.change_log.read_from(0):
            if entry.decision is Decision.PENDING_APPROVAL:
                held[entry.sequence_number] = entry
            elif entry.references_sequence is not None:
                held.pop(entry.references_sequence, None)

        snapshot = self.store.snapshot()
        for sequence_number, entry in held.items():
            instance = WorkflowInstance(
                proposal=entry.proposal,
                state=WorkflowState.PENDING_APPROVAL,
                verdict=entry.verdict,
                created_at=entry.timestamp,
                history=[WorkflowState.SUBMITTED, WorkflowState.EVALUATED,
                         WorkflowState.PENDING_APPROVAL],
                pending_sequence=sequence_number,
                owner_ids=self._owners_of(snapshot, entry.proposal)
            )
            self._open[instance.proposal_id] = instance
        if held:
            logger.info(f"Restored {len(held)} proposals awaiting approval from the change log")

    # Commands
    def submit(self, proposal: ChangeProposal,
               external_events: Optional[Iterable[ExternalEvent]] = None) -> WorkflowOutcome:
        """
        Evaluate a proposal and take it as far as it can go without a human.

        Args:
            proposal: The change to make
            external_events: Calendar events to check against; fetched from
                the calendar provider for the affected owners when omitted

        Clean proposals are committed, soft conflicts wait for approval and
        hard conflicts are rejected. StorageIOError propagates to the caller.
        """
        with self._lock:
            if proposal.proposal_id in self._open:
                raise WorkflowError(f"Proposal {proposal.proposal_id} is already awaiting approval")

        instance = WorkflowInstance(proposal=proposal)
        snapshot = self.store.snapshot()
        instance.owner_ids = self._owners_of(snapshot, proposal)
        if external_events is None:
            external_events = self._external_events_for(snapshot, proposal)

        verdict = detect_conflicts(snapshot, proposal, external_events,
                                   self.allow_multiple_all_day)
        instance.verdict = verdict
        self._transition(instance, WorkflowState.EVALUATED)
        logger.info(
            f"Proposal {proposal.proposal_id} ({proposal.kind.value}, {proposal.origin.value}) "
            f"evaluated as {verdict.status.value}"
        )

        status = verdict.status
        if status is ConflictStatus.CLEAN:
            self._transition(instance, WorkflowState.AUTO_COMMITTED)
            return self._commit(instance)
        elif status is ConflictStatus.SOFT_CONFLICT:
            return self._hold(instance)
        elif status is ConflictStatus.HARD_CONFLICT:
            return self._reject(instance, None)
        raise ValueError(f"Unknown verdict status: {status}")

    def approve(self, proposal_id: str) -> WorkflowOutcome:
        """Accept a pending proposal's conflict and commit it"""
        instance = self._claim(proposal_id)
        try:
            if instance.state is WorkflowState.PENDING_APPROVAL:
                self._transition(instance, WorkflowState.APPROVED)
            return self._commit(instance)
        except StorageIOError:
            # The change log append failed and nothing was committed, so the
            # instance stays open in the approved state for a retry
            self._reopen(instance)
            raise

    def deny(self, proposal_id: str) -> WorkflowOutcome:
        """Decline a pending proposal; the store is left untouched"""
        instance = self._claim(proposal_id, allowed=(WorkflowState.PENDING_APPROVAL,))
        try:
            self._transition(instance, WorkflowState.DENIED)
            return self._reject(instance, ReasonCode.DENIED)
        except StorageIOError:
            self._reopen(instance)
            raise

    def cancel(self, proposal_id: str, requested_by: Optional[str] = None) -> WorkflowOutcome:
        """Withdraw a pending proposal on behalf of its owner"""
        with self._lock:
            instance = self._open.get(proposal_id)
        if instance is not None and requested_by is not None:
            allowed = set(instance.owner_ids)
            if instance.proposal.requested_by:
                allowed.add(instance.proposal.requested_by)
            if requested_by not in allowed:
                raise WorkflowError(
                    f"{requested_by} may not cancel proposal {proposal_id}"
                )

        instance = self._claim(proposal_id, allowed=(WorkflowState.PENDING_APPROVAL,))
        try:
            return self._reject(instance, ReasonCode.CANCELED)
        except StorageIOError:
            self._reopen(instance)
            raise

    def undo(self, sequence_number: int, requested_by: Optional[str] = None) -> WorkflowOutcome:
        """
        Revert a committed change by submitting its inverse.

        The inverse goes through the normal workflow, so it can itself be
        rejected if the shifts changed since the entry was committed.
        """
        entry = self.change_log.get(sequence_number)
        if entry is None:
            raise NotFoundError(f"No change log entry {sequence_number}")
        if entry.decision is not Decision.COMMITTED:
            raise WorkflowError(
                f"Change log entry {sequence_number} is {entry.decision.value}, only "
                f"committed changes can be undone"
            )
        inverse = self._inverse_of(entry, requested_by)
        logger.info(f"Undoing change log entry {sequence_number} with proposal {inverse.proposal_id}")
        return self.submit(inverse)

    def redo(self, sequence_number: int, requested_by: Optional[str] = None) -> WorkflowOutcome:
        """Re-apply a change by undoing the entry that reverted it"""
        entry = self.change_log.get(sequence_number)
        if entry is None:
            raise NotFoundError(f"No change log entry {sequence_number}")
        if entry.proposal.reverts_sequence is None:
            raise WorkflowError(f"Change log entry {sequence_number} is not an undo")
        return self.undo(sequence_number, requested_by)

    # Queries
    def get(self, proposal_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._open.get(proposal_id)
        if instance is None:
            raise ProposalNotFoundError(proposal_id)
        return instance

    def pending(self, owner_id: Optional[str] = None) -> List[WorkflowInstance]:
        with self._lock:
            instances = list(self._open.values())
        if owner_id is not None:
            instances = [i for i in instances if owner_id in i.owner_ids]
        return sorted(instances, key=lambda i: i.created_at)

    # Internals
    def _transition(self, instance: WorkflowInstance, target: WorkflowState):
        if target not in ALLOWED_TRANSITIONS[instance.state]:
            raise InvalidTransitionError(instance.proposal_id, instance.state, target)
        instance.state = target
        instance.history.append(target)

    def _claim(self, proposal_id: str,
               allowed: Tuple[WorkflowState, ...] = (WorkflowState.PENDING_APPROVAL,
                                                     WorkflowState.APPROVED)) -> WorkflowInstance:
        """Take an open instance out of the table so only one command resolves it"""
        with self._lock:
            instance = self._open.get(proposal_id)
            if instance is None:
                raise ProposalNotFoundError(proposal_id)
            if instance.state not in allowed:
                raise InvalidTransitionError(proposal_id, instance.state, allowed[0])
            del self._open[proposal_id]
        return instance

    def _reopen(self, instance: WorkflowInstance):
        with self._lock:
            self._open[instance.proposal_id] = instance

    def _hold(self, instance: WorkflowInstance) -> WorkflowOutcome:
        self._transition(instance, WorkflowState.PENDING_APPROVAL)
        entry = ChangeLogEntry(
            proposal=instance.proposal,
            decision=Decision.PENDING_APPROVAL,
            verdict=instance.verdict
        )
        instance.pending_sequence = self.change_log.append(entry)
        with self._lock:
            self._open[instance.proposal_id] = instance
        logger.info(
            f"Proposal {instance.proposal_id} awaiting approval: "
            f"{', '.join(code.value for code in instance.verdict.reason_codes)}"
        )
        return self._outcome(instance, instance.pending_sequence)

    def _commit(self, instance: WorkflowInstance) -> WorkflowOutcome:
        proposal = instance.proposal
        snapshot = self.store.snapshot()
        try:
            resulting = project_proposal(snapshot, proposal)
        except ShiftNotFoundError as e:
            logger.warning(f"Proposal {proposal.proposal_id} lost its target before commit: {e}")
            return self._reject(instance, ReasonCode.CONCURRENT_MODIFICATION)

        previous = tuple(
            shift for shift in (snapshot.find(sid) for sid in proposal.shift_ids)
            if shift is not None
        )
        removed = (proposal.target_shift_id,) if proposal.kind is ProposalKind.DELETE else ()
        entry = ChangeLogEntry(
            proposal=proposal,
            decision=Decision.COMMITTED,
            verdict=instance.verdict,
            resulting_shifts=resulting,
            previous_shifts=previous,
            removed_shift_ids=removed,
            references_sequence=instance.pending_sequence
        )

        sequence_numbers = []
        try:
            shifts = self.store.apply_committed(
                entry, journal=lambda e: sequence_numbers.append(self.change_log.append(e))
            )
        except StaleVersionError as e:
            logger.warning(f"Proposal {proposal.proposal_id} rejected, {e}")
            return self._reject(instance, ReasonCode.CONCURRENT_MODIFICATION)

        self._transition(instance, WorkflowState.COMMITTED)
        instance.resolved_at = datetime.now()
        logger.info(f"Proposal {proposal.proposal_id} committed as entry {sequence_numbers[0]}")
        return self._outcome(instance, sequence_numbers[0], tuple(shifts))

    def _reject(self, instance: WorkflowInstance,
                reason: Optional[ReasonCode]) -> WorkflowOutcome:
        self._transition(instance, WorkflowState.REJECTED)
        instance.reason = reason
        entry = ChangeLogEntry(
            proposal=instance.proposal,
            decision=Decision.REJECTED,
            verdict=instance.verdict,
            reason=reason,
            references_sequence=instance.pending_sequence
        )
        sequence_number = self.change_log.append(entry)
        instance.resolved_at = datetime.now()
        codes = [code.value for code in instance.verdict.reason_codes]
        if reason is not None:
            codes.append(reason.value)
        logger.info(f"Proposal {instance.proposal_id} rejected: {', '.join(codes) or 'no reason'}")
        return self._outcome(instance, sequence_number)

    def _outcome(self, instance: WorkflowInstance, sequence_number: Optional[int],
                 shifts: Tuple[Shift, ...] = ()) -> WorkflowOutcome:
        return WorkflowOutcome(
            proposal_id=instance.proposal_id,
            state=instance.state,
            verdict=instance.verdict,
            reason=instance.reason,
            sequence_number=sequence_number,
            shifts=shifts,
            proposal=instance.proposal
        )

    def _owners_of(self, snapshot: StoreSnapshot, proposal: ChangeProposal) -> Set[str]:
        owners = set()
        for shift_id in proposal.shift_ids:
            shift = snapshot.find(shift_id)
            if shift is not None:
                owners.add(shift.owner_id)
        try:
            owners.update(shift.owner_id for shift in project_proposal(snapshot, proposal))
        except (NotFoundError, KeyError, TypeError, ValueError):
            pass
        if not owners and proposal.requested_by:
            owners.add(proposal.requested_by)
        return owners

    def _external_events_for(self, snapshot: StoreSnapshot,
                             proposal: ChangeProposal) -> List[ExternalEvent]:
        if self.calendar_provider is None:
            return []
        try:
            resulting = project_proposal(snapshot, proposal)
        except (NotFoundError, KeyError, TypeError, ValueError):
            # The detector reports the malformed proposal itself
            return []

        events = []
        for owner_id in sorted({shift.owner_id for shift in resulting}):
            dates = [shift.date for shift in resulting if shift.owner_id == owner_id]
            start_date = min(dates) - timedelta(days=1)
            end_date = max(dates) + timedelta(days=1)
            for event in self.calendar_provider.list_events(owner_id, start_date, end_date):
                if event.owner_id is None:
                    event = ExternalEvent(event.external_id, event.start, event.end,
                                          event.title, owner_id)
                events.append(event)
        return events

    def _inverse_of(self, entry: ChangeLogEntry, requested_by: Optional[str]) -> ChangeProposal:
        proposal = entry.proposal
        seq = entry.sequence_number
        kind = proposal.kind
        if kind is ProposalKind.CREATE:
            return ChangeProposal.for_delete(entry.resulting_shifts[0], requested_by=requested_by,
                                             reverts_sequence=seq)
        elif kind is ProposalKind.DELETE:
            removed = entry.previous_shifts[0]
            return ChangeProposal.for_create(
                owner_id=removed.owner_id,
                shift_date=removed.date,
                start_time=removed.start_time,
                end_time=removed.end_time,
                label=removed.label,
                external_id=removed.external_id,
                shift_id=removed.shift_id,
                base_version=entry.committed_version(removed.shift_id),
                requested_by=requested_by,
                reverts_sequence=seq,
                source_origin=removed.source_origin
            )
        elif kind is ProposalKind.MODIFY:
            before = entry.previous_shifts[0]
            after = entry.resulting_shifts[0]
            changes = {key: getattr(before, key) for key in PAYLOAD_FIELDS}
            return ChangeProposal.for_modify(after, requested_by=requested_by,
                                             reverts_sequence=seq, **changes)
        elif kind is ProposalKind.SWAP:
            first, second = entry.resulting_shifts
            return ChangeProposal.for_swap(first, second, requested_by=requested_by,
                                           reverts_sequence=seq)
        raise ValueError(f"Unknown proposal kind: {kind}")
