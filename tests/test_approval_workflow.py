import pytest
import sys
import threading
from pathlib import Path
from datetime import date, datetime, time

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_reconciler.approval_workflow import ApprovalWorkflow, WorkflowState
from shift_reconciler.calendar_sync import StaticCalendarProvider
from shift_reconciler.change_log import ChangeLog
from shift_reconciler.errors import (
    HardConflictError, NotFoundError, ProposalNotFoundError, StaleVersionError,
    StorageIOError, WorkflowError
)
from shift_reconciler.models import (
    ChangeProposal, ConflictStatus, Decision, ExternalEvent, ReasonCode
)
from shift_reconciler.shift_store import ShiftStore

DAY = date(2025, 11, 3)


@pytest.fixture
def provider():
    return StaticCalendarProvider()


@pytest.fixture
def workflow(tmp_path, provider):
    """Workflow over a fresh file-backed store and change log."""
    store = ShiftStore(str(tmp_path / "shifts.json"))
    change_log = ChangeLog(str(tmp_path / "change_log.jsonl"))
    return ApprovalWorkflow(store, change_log, provider)


def create(workflow, owner, day, start, end, **kwargs):
    outcome = workflow.submit(ChangeProposal.for_create(owner, day, start, end, **kwargs))
    assert outcome.committed, outcome
    return outcome.shifts[0]


def test_overlapping_create_is_rejected(workflow):
    """
    Why this is important: An owner already working 09:00-17:00 must not be
    given a 16:00-20:00 shift; the rejection must be recorded for audit.
    """
    shift_a = create(workflow, "alice", DAY, time(9), time(17))

    outcome = workflow.submit(ChangeProposal.for_create("alice", DAY, time(16), time(20)))

    assert outcome.rejected
    assert outcome.verdict.status is ConflictStatus.HARD_CONFLICT
    assert outcome.verdict.reason_codes == (ReasonCode.OVERLAP,)
    assert len(workflow.store) == 1
    assert workflow.store.get(shift_a.shift_id).version == 1

    entry = workflow.change_log.get(outcome.sequence_number)
    assert entry.decision is Decision.REJECTED
    assert entry.proposal_id == outcome.proposal_id

    with pytest.raises(HardConflictError):
        outcome.raise_for_status()


def test_external_overlap_waits_for_approval_then_commits(workflow, provider):
    """
    Why this is important: A clash with a personal calendar event is up to a
    person to accept. The change is held, and only committed once approved.
    """
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 4, 12), datetime(2025, 11, 4, 13),
                                     "Dentist", "alice"))
    proposal = ChangeProposal.for_create("alice", date(2025, 11, 4), time(12, 30), time(14))

    outcome = workflow.submit(proposal)
    assert outcome.pending
    assert outcome.verdict.reason_codes == (ReasonCode.EXTERNAL_OVERLAP,)
    assert len(workflow.store) == 0
    assert [i.proposal_id for i in workflow.pending()] == [proposal.proposal_id]
    assert [i.proposal_id for i in workflow.pending("alice")] == [proposal.proposal_id]
    assert workflow.pending("bob") == []
    pending_sequence = outcome.sequence_number
    assert workflow.change_log.get(pending_sequence).decision is Decision.PENDING_APPROVAL

    approved = workflow.approve(proposal.proposal_id)

    assert approved.committed
    assert approved.shifts[0].version == 1
    assert workflow.store.get(proposal.new_shift_id).start_time == time(12, 30)
    entry = workflow.change_log.get(approved.sequence_number)
    assert entry.decision is Decision.COMMITTED
    assert entry.references_sequence == pending_sequence
    assert workflow.pending() == []


def test_concurrent_modifications_with_same_base_version(workflow):
    """
    Why this is important: Two edits computed from the same version must not
    both win. The first commits, the second is rejected as stale.
    """
    shift = create(workflow, "alice", DAY, time(9), time(17), shift_id="shift-a")
    for end in (time(16), time(15)):
        shift = workflow.submit(ChangeProposal.for_modify(shift, end_time=end)).shifts[0]
    assert shift.version == 3

    first = ChangeProposal.for_modify(shift, end_time=time(14))
    second = ChangeProposal.for_modify(shift, start_time=time(10))

    first_outcome = workflow.submit(first)
    second_outcome = workflow.submit(second)

    assert first_outcome.committed
    assert first_outcome.shifts[0].version == 4
    assert second_outcome.rejected
    assert second_outcome.reason is ReasonCode.CONCURRENT_MODIFICATION
    assert workflow.store.get("shift-a").start_time == time(9)
    with pytest.raises(StaleVersionError):
        second_outcome.raise_for_status()


def test_deny_leaves_store_untouched(workflow, provider):
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 12), datetime(2025, 11, 3, 13),
                                     owner_id="alice"))
    proposal = ChangeProposal.for_create("alice", DAY, time(12), time(14))
    pending = workflow.submit(proposal)

    outcome = workflow.deny(proposal.proposal_id)

    assert outcome.rejected
    assert outcome.reason is ReasonCode.DENIED
    assert len(workflow.store) == 0
    entry = workflow.change_log.get(outcome.sequence_number)
    assert entry.reason is ReasonCode.DENIED
    assert entry.references_sequence == pending.sequence_number
    with pytest.raises(ProposalNotFoundError):
        workflow.deny(proposal.proposal_id)
    with pytest.raises(ProposalNotFoundError):
        workflow.approve(proposal.proposal_id)


def test_cancel_only_by_owner(workflow, provider):
    """
    Why this is important: Withdrawing a pending change is the owner's call.
    Anyone else trying to cancel it must be refused and the change stays open.
    """
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 12), datetime(2025, 11, 3, 13),
                                     owner_id="alice"))
    proposal = ChangeProposal.for_create("alice", DAY, time(12), time(14))
    workflow.submit(proposal)

    with pytest.raises(WorkflowError):
        workflow.cancel(proposal.proposal_id, requested_by="mallory")
    assert workflow.get(proposal.proposal_id).state is WorkflowState.PENDING_APPROVAL

    outcome = workflow.cancel(proposal.proposal_id, requested_by="alice")
    assert outcome.rejected
    assert outcome.reason is ReasonCode.CANCELED
    with pytest.raises(ProposalNotFoundError):
        workflow.get(proposal.proposal_id)


def test_unknown_proposal_commands_raise(workflow):
    with pytest.raises(ProposalNotFoundError):
        workflow.approve("nope")
    with pytest.raises(ProposalNotFoundError):
        workflow.cancel("nope")


def test_every_decision_is_logged(workflow, provider):
    """
    Why this is important: Every proposal that reaches a final state must
    leave a durable trace, whatever the outcome.
    """
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 20), datetime(2025, 11, 3, 21),
                                     owner_id="alice"))
    committed = create(workflow, "alice", DAY, time(9), time(12))
    rejected = workflow.submit(ChangeProposal.for_create("alice", DAY, time(11), time(13)))
    held = workflow.submit(ChangeProposal.for_create("alice", DAY, time(19), time(22)))
    denied = workflow.deny(held.proposal_id)

    decisions = [e.decision for e in workflow.change_log.read_from(0)]
    assert decisions == [Decision.COMMITTED, Decision.REJECTED, Decision.PENDING_APPROVAL,
                         Decision.REJECTED]
    assert workflow.change_log.history_for_shift(committed.shift_id)[0].sequence_number == 1
    assert rejected.sequence_number == 2
    assert denied.sequence_number == 4


def test_versions_increase_by_one_per_commit(workflow):
    shift = create(workflow, "alice", DAY, time(9), time(17), shift_id="shift-a")
    for hour in (10, 11, 12):
        shift = workflow.submit(ChangeProposal.for_modify(shift, start_time=time(hour))).shifts[0]

    versions = [e.resulting_shift_snapshot.version
                for e in workflow.change_log.history_for_shift("shift-a")]
    assert versions == [1, 2, 3, 4]


def test_undo_and_redo_of_a_create(workflow):
    """
    Why this is important: Undo must go through the same checks as any other
    change, and a redo after an undo must continue the version history.
    """
    shift = create(workflow, "alice", DAY, time(9), time(17), shift_id="shift-a")

    undone = workflow.undo(1)
    assert undone.committed
    assert workflow.store.find("shift-a") is None
    assert workflow.change_log.get(undone.sequence_number).proposal.reverts_sequence == 1

    redone = workflow.redo(undone.sequence_number)
    assert redone.committed
    restored = workflow.store.get("shift-a")
    assert restored.version == 3
    assert (restored.start_time, restored.end_time) == (shift.start_time, shift.end_time)


def test_undo_of_modify_restores_previous_fields(workflow):
    shift = create(workflow, "alice", DAY, time(9), time(17), label="Early")
    modified = workflow.submit(ChangeProposal.for_modify(shift, start_time=time(13),
                                                         label="Late"))

    outcome = workflow.undo(modified.sequence_number, requested_by="alice")

    assert outcome.committed
    current = workflow.store.get(shift.shift_id)
    assert (current.start_time, current.label, current.version) == (time(9), "Early", 3)


def test_undo_of_swap_swaps_back(workflow):
    first = create(workflow, "alice", DAY, time(6), time(10))
    second = create(workflow, "bob", DAY, time(14), time(22))
    swapped = workflow.submit(ChangeProposal.for_swap(first, second))
    assert workflow.store.get(first.shift_id).owner_id == "bob"

    workflow.undo(swapped.sequence_number)
    assert workflow.store.get(first.shift_id).owner_id == "alice"
    assert workflow.store.get(second.shift_id).owner_id == "bob"


def test_undo_requires_committed_entry(workflow):
    rejected = workflow.submit(ChangeProposal.for_create("alice", DAY, time(9), time(9)))
    with pytest.raises(WorkflowError):
        workflow.undo(rejected.sequence_number)
    with pytest.raises(NotFoundError):
        workflow.undo(99)
    create(workflow, "alice", DAY, time(9), time(10))
    with pytest.raises(WorkflowError):
        workflow.redo(2)


def test_pending_proposals_survive_restart(tmp_path, provider):
    """
    Why this is important: Approvals can arrive long after a change was
    held. A restart in between must not lose the pending change.
    """
    store = ShiftStore(str(tmp_path / "shifts.json"))
    change_log = ChangeLog(str(tmp_path / "change_log.jsonl"))
    workflow = ApprovalWorkflow(store, change_log, provider)
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 12), datetime(2025, 11, 3, 13),
                                     owner_id="alice"))
    held = workflow.submit(ChangeProposal.for_create("alice", DAY, time(12), time(14)))
    denied = workflow.submit(ChangeProposal.for_create("alice", DAY, time(12, 30), time(15)))
    workflow.deny(denied.proposal_id)

    restarted = ApprovalWorkflow(ShiftStore(str(tmp_path / "shifts.json")),
                                 ChangeLog(str(tmp_path / "change_log.jsonl")), provider)

    assert [i.proposal_id for i in restarted.pending()] == [held.proposal_id]
    assert restarted.get(held.proposal_id).owner_ids == {"alice"}
    outcome = restarted.approve(held.proposal_id)
    assert outcome.committed
    assert restarted.change_log.get(outcome.sequence_number).references_sequence == \
        held.sequence_number


def test_approval_can_be_retried_after_storage_failure(workflow, provider, monkeypatch):
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 12), datetime(2025, 11, 3, 13),
                                     owner_id="alice"))
    held = workflow.submit(ChangeProposal.for_create("alice", DAY, time(12), time(14)))

    original_append = workflow.change_log.append

    def failing_append(entry):
        raise StorageIOError("disk full")

    monkeypatch.setattr(workflow.change_log, "append", failing_append)
    with pytest.raises(StorageIOError):
        workflow.approve(held.proposal_id)
    assert len(workflow.store) == 0
    assert workflow.get(held.proposal_id).state is WorkflowState.APPROVED

    monkeypatch.setattr(workflow.change_log, "append", original_append)
    assert workflow.approve(held.proposal_id).committed


def test_concurrent_overlapping_creates_never_double_book(workflow):
    """
    Why this is important: Many callers may submit at once. However the
    threads interleave, an owner must end up with at most one of several
    mutually overlapping shifts.
    """
    proposals = [ChangeProposal.for_create("alice", DAY, time(9 + i % 2), time(17))
                 for i in range(8)]
    outcomes = []
    outcomes_lock = threading.Lock()
    barrier = threading.Barrier(len(proposals))

    def submit(proposal):
        barrier.wait()
        outcome = workflow.submit(proposal)
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=submit, args=(p,)) for p in proposals]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for o in outcomes if o.committed) == 1
    assert sum(1 for o in outcomes if o.rejected) == 7
    assert len(workflow.store) == 1
    assert len(workflow.change_log) == 8


def test_store_save_failure_after_logging_keeps_the_commit(workflow, provider, monkeypatch):
    """
    Why this is important: Once a commit is in the change log it has
    happened. A failed write of the store file must not turn it into a
    rejection, leave it open for a second approval, or log it twice.
    """
    provider.add_event(ExternalEvent("evt-1", datetime(2025, 11, 3, 12), datetime(2025, 11, 3, 13),
                                     owner_id="alice"))
    held = workflow.submit(ChangeProposal.for_create("alice", DAY, time(12), time(14)))
    original_save = workflow.store.save_data
    calls = []

    def save_failing_once():
        calls.append(1)
        if len(calls) == 1:
            raise StorageIOError("disk full")
        return original_save()

    monkeypatch.setattr(workflow.store, "save_data", save_failing_once)

    outcome = workflow.approve(held.proposal_id)

    assert outcome.committed
    assert workflow.store.unsaved_changes
    with pytest.raises(ProposalNotFoundError):
        workflow.approve(held.proposal_id)
    assert [e.decision for e in workflow.change_log.read_from(0)] == [
        Decision.PENDING_APPROVAL, Decision.COMMITTED
    ]

    create(workflow, "alice", DAY, time(15), time(16))
    assert not workflow.store.unsaved_changes
    assert len(ShiftStore(str(workflow.store.data_file))) == 2


def test_auto_commit_survives_store_save_failure(workflow, monkeypatch):
    def failing_save():
        raise StorageIOError("disk full")

    monkeypatch.setattr(workflow.store, "save_data", failing_save)
    outcome = workflow.submit(ChangeProposal.for_create("alice", DAY, time(9), time(12)))

    assert outcome.committed
    assert len(workflow.change_log) == 1
    replayed = ShiftStore.replay(workflow.change_log.read_from(0))
    assert replayed.get(outcome.shifts[0].shift_id) == outcome.shifts[0]
