import pytest
import sys
import json
import threading
from pathlib import Path
from datetime import date, datetime, time

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_reconciler.approval_workflow import ApprovalWorkflow
from shift_reconciler.calendar_sync import (
    CalendarSyncReconciler, JsonFileCalendarProvider, StaticCalendarProvider, event_shape
)
from shift_reconciler.change_log import ChangeLog
from shift_reconciler.errors import CalendarProviderError, StorageIOError
from shift_reconciler.models import (
    ChangeProposal, ExternalEvent, ProposalKind, ProposalOrigin, ReasonCode, SourceOrigin
)
from shift_reconciler.shift_store import ShiftStore

START = date(2025, 11, 1)
END = date(2025, 11, 30)


def event(external_id, day, start_hour, end_hour, title="Clinic", owner="alice"):
    return ExternalEvent(external_id, datetime(2025, 11, day, start_hour),
                         datetime(2025, 11, day, end_hour), title, owner)


@pytest.fixture
def provider():
    return StaticCalendarProvider()


@pytest.fixture
def services(tmp_path, provider):
    """Store, change log, workflow and reconciler sharing one data directory."""
    store = ShiftStore(str(tmp_path / "shifts.json"))
    change_log = ChangeLog(str(tmp_path / "change_log.jsonl"))
    workflow = ApprovalWorkflow(store, change_log, provider)
    reconciler = CalendarSyncReconciler(store, workflow, provider, change_log)
    return store, change_log, workflow, reconciler


def test_new_events_are_mirrored_as_shifts(services, provider):
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12, "Morning clinic"))
    provider.add_event(event("evt-2", 4, 13, 17))

    report = reconciler.run_cycle("alice", START, END)

    assert report.committed == 2
    shift = store.get("sync-evt-1")
    assert shift.source_origin is SourceOrigin.EXTERNAL_SYNC
    assert shift.external_id == "evt-1"
    assert shift.label == "Morning clinic"
    assert (shift.start_time, shift.end_time) == (time(9), time(12))
    assert all(e.proposal.origin is ProposalOrigin.EXTERNAL_SYNC for e in change_log.read_from(0))


def test_second_cycle_without_changes_proposes_nothing(services, provider):
    """
    Why this is important: Reconciliation runs repeatedly. Running it again
    when nothing changed outside must not produce new proposals, or the log
    would fill with duplicates and owners with approval requests.
    """
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    create = ChangeProposal.for_create("alice", date(2025, 11, 5), time(8), time(12))
    workflow.submit(create)
    # Overlaps a local shift, so it is rejected and must not be retried
    provider.add_event(event("evt-2", 5, 10, 11))

    first = reconciler.run_cycle("alice", START, END)
    assert len(first.proposals) == 2
    assert first.committed == 1
    assert first.rejected == 1
    entries_after_first = change_log.latest()

    second = reconciler.run_cycle("alice", START, END)
    assert second.proposals == []
    assert change_log.latest() == entries_after_first


def test_handled_events_are_remembered_across_restart(tmp_path, provider):
    provider.add_event(event("evt-1", 3, 9, 12))
    store = ShiftStore(str(tmp_path / "shifts.json"))
    change_log = ChangeLog(str(tmp_path / "change_log.jsonl"))
    workflow = ApprovalWorkflow(store, change_log, provider)
    workflow.submit(ChangeProposal.for_create("alice", date(2025, 11, 3), time(8), time(10)))
    CalendarSyncReconciler(store, workflow, provider, change_log).run_cycle("alice", START, END)

    store = ShiftStore(str(tmp_path / "shifts.json"))
    change_log = ChangeLog(str(tmp_path / "change_log.jsonl"))
    workflow = ApprovalWorkflow(store, change_log, provider)
    reconciler = CalendarSyncReconciler(store, workflow, provider, change_log)

    assert reconciler.run_cycle("alice", START, END).proposals == []


def test_moved_event_modifies_mirror(services, provider):
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    reconciler.run_cycle("alice", START, END)

    provider.add_event(event("evt-1", 3, 10, 14))
    report = reconciler.run_cycle("alice", START, END)

    assert [p.kind for p in report.proposals] == [ProposalKind.MODIFY]
    shift = store.get("sync-evt-1")
    assert (shift.start_time, shift.end_time, shift.version) == (time(10), time(14), 2)
    assert shift.external_id == "evt-1"


def test_vanished_event_deletes_mirror(services, provider):
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    reconciler.run_cycle("alice", START, END)
    workflow.submit(ChangeProposal.for_create("alice", date(2025, 11, 6), time(9), time(12)))

    provider.remove_event("evt-1")
    report = reconciler.run_cycle("alice", START, END)

    assert [p.kind for p in report.proposals] == [ProposalKind.DELETE]
    assert store.find("sync-evt-1") is None
    assert len(store) == 1
    assert reconciler.run_cycle("alice", START, END).proposals == []


def test_locally_deleted_mirror_needs_approval_to_come_back(services, provider):
    """
    Why this is important: If someone deliberately deleted a synced shift,
    the next sync must not quietly bring it back. It is held for approval,
    and only proposed once.
    """
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    reconciler.run_cycle("alice", START, END)
    workflow.submit(ChangeProposal.for_delete(store.get("sync-evt-1")))

    report = reconciler.run_cycle("alice", START, END)

    assert report.pending == 1
    held = report.outcomes[0]
    assert held.verdict.reason_codes == (ReasonCode.RESURRECTION,)
    assert store.find("sync-evt-1") is None
    assert reconciler.run_cycle("alice", START, END).proposals == []

    approved = workflow.approve(held.proposal_id)
    assert approved.committed
    assert store.get("sync-evt-1").version == 3
    assert reconciler.run_cycle("alice", START, END).proposals == []


def test_storage_failure_is_retried_once(services, provider, monkeypatch):
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    original_submit = workflow.submit
    calls = []

    def flaky_submit(proposal, external_events=None):
        calls.append(proposal.proposal_id)
        if len(calls) == 1:
            raise StorageIOError("disk full")
        return original_submit(proposal, external_events=external_events)

    monkeypatch.setattr(workflow, "submit", flaky_submit)
    report = reconciler.run_cycle("alice", START, END)

    assert len(calls) == 2
    assert report.committed == 1
    assert report.failures == []


def test_persistent_storage_failure_is_reported(services, provider, monkeypatch):
    """
    Why this is important: A sync that cannot write must say so. The failure
    is retried once, then reported, and the event is planned again next time.
    """
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    calls = []

    def failing_submit(proposal, external_events=None):
        calls.append(proposal.proposal_id)
        raise StorageIOError("disk full")

    monkeypatch.setattr(workflow, "submit", failing_submit)
    report = reconciler.run_cycle("alice", START, END)

    assert len(calls) == 2
    assert len(report.failures) == 1
    assert isinstance(report.failures[0][1], StorageIOError)

    monkeypatch.undo()
    assert reconciler.run_cycle("alice", START, END).committed == 1


def test_event_shape_mapping():
    assert event_shape(event("e", 3, 9, 12, "x")) == ("2025-11-03", "09:00", "12:00", "x")
    whole_day = ExternalEvent("e", datetime(2025, 11, 3), datetime(2025, 11, 4), "Leave")
    assert event_shape(whole_day) == ("2025-11-03", None, None, "Leave")
    overnight = ExternalEvent("e", datetime(2025, 11, 3, 22), datetime(2025, 11, 4, 6))
    assert event_shape(overnight) == ("2025-11-03", "22:00", "06:00", "")
    too_long = ExternalEvent("e", datetime(2025, 11, 3, 9), datetime(2025, 11, 5, 9, 30))
    assert event_shape(too_long) is None


def test_background_thread_runs_cycle_on_notify(services, provider):
    store, change_log, workflow, reconciler = services
    today = date.today()
    provider.add_event(ExternalEvent("evt-1", datetime.combine(today, time(9)),
                                     datetime.combine(today, time(12)), "Clinic", "alice"))

    reconciler.start(["alice"], interval_seconds=60, window_days=7)
    try:
        reconciler.notify("alice")
        for _ in range(100):
            if "alice" in reconciler.last_reports:
                break
            threading.Event().wait(0.05)
    finally:
        reconciler.stop()

    assert reconciler.last_reports["alice"].committed == 1
    assert store.find("sync-evt-1") is not None
    assert reconciler.last_error is None


def test_json_file_provider(tmp_path):
    feed = tmp_path / "calendar.json"
    feed.write_text(json.dumps({"events": [
        event("evt-1", 3, 9, 12).to_dict(),
        event("evt-2", 3, 9, 12, owner="bob").to_dict(),
        event("evt-3", 28, 9, 12).to_dict(),
    ]}))
    provider = JsonFileCalendarProvider(str(feed))

    events = provider.list_events("alice", date(2025, 11, 1), date(2025, 11, 10))
    assert [e.external_id for e in events] == ["evt-1"]

    feed.write_text("{ broken")
    with pytest.raises(CalendarProviderError):
        provider.list_events("alice", START, END)


def test_sync_approval_lost_to_a_race_is_proposed_again(services, provider):
    """
    Why this is important: A held sync change can lose its slot to another
    change before anyone approves it. Once the slot frees up the running
    reconciler must mirror the event again, just as a restarted one would.
    """
    store, change_log, workflow, reconciler = services
    provider.add_event(event("evt-1", 3, 9, 12))
    provider.add_event(event("evt-2", 3, 11, 13))
    first = reconciler.run_cycle("alice", START, END)
    assert first.pending == 2
    sync_held = next(o for o in first.outcomes if o.proposal.external_id == "evt-1")

    user_held = workflow.submit(ChangeProposal.for_create("alice", date(2025, 11, 3),
                                                          time(10), time(11)))
    assert user_held.pending
    user_shift = workflow.approve(user_held.proposal_id).shifts[0]
    lost = workflow.approve(sync_held.proposal_id)
    assert lost.reason is ReasonCode.CONCURRENT_MODIFICATION
    workflow.submit(ChangeProposal.for_delete(user_shift))

    live = reconciler.run_cycle("alice", START, END)
    restarted = CalendarSyncReconciler(store, workflow, provider, change_log)

    assert [p.external_id for p in live.proposals] == ["evt-1"]
    assert live.pending == 1
    assert restarted.plan("alice", START, END, provider.list_events("alice", START, END)) == []
