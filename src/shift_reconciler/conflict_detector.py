"""
Conflict Detector for the Shift Reconciliation System

Pure, deterministic classification of a change proposal against a store
snapshot and the externally observed calendar events. Never raises: any
problem with the proposal itself becomes a hard conflict with a reason code.
"""

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Iterable, List, Set, Tuple

from .errors import ShiftNotFoundError
from .models import (
    ChangeProposal, ConflictStatus, ConflictVerdict, ExternalEvent, ProposalKind,
    ProposalOrigin, ReasonCode, Shift, SourceOrigin, parse_payload, shifts_overlap
)
from .shift_store import StoreSnapshot

logger = logging.getLogger(__name__)

HARD_REASONS = frozenset({
    ReasonCode.OVERLAP,
    ReasonCode.ALL_DAY_DUPLICATE,
    ReasonCode.INVALID_RANGE,
    ReasonCode.INVALID_PROPOSAL,
    ReasonCode.TARGET_NOT_FOUND,
    ReasonCode.TARGET_EXISTS,
})

SOFT_REASONS = frozenset({
    ReasonCode.EXTERNAL_OVERLAP,
    ReasonCode.RESURRECTION,
})


def project_proposal(snapshot: StoreSnapshot, proposal: ChangeProposal) -> Tuple[Shift, ...]:
    """
    Compute the shifts a proposal would leave behind if committed.

    Returns an empty tuple for a delete. Raises ShiftNotFoundError for a
    missing target and KeyError/ValueError for an incomplete payload.
    """
    kind = proposal.kind
    if kind is ProposalKind.CREATE:
        fields = parse_payload(proposal.payload)
        for key in ("date", "owner_id"):
            if key not in fields:
                raise KeyError(key)
        fields.setdefault("start_time", None)
        fields.setdefault("end_time", None)
        fields.setdefault("source_origin",
                          SourceOrigin.EXTERNAL_SYNC
                          if proposal.origin is ProposalOrigin.EXTERNAL_SYNC
                          else SourceOrigin.LOCAL)
        return (Shift(shift_id=proposal.new_shift_id, version=proposal.base_version + 1,
                      **fields),)
    elif kind is ProposalKind.MODIFY:
        current = snapshot.get(proposal.target_shift_id)
        return (replace(current.with_payload(proposal.payload),
                        version=proposal.base_version + 1),)
    elif kind is ProposalKind.DELETE:
        snapshot.get(proposal.target_shift_id)
        return ()
    elif kind is ProposalKind.SWAP:
        first = snapshot.get(proposal.target_shift_id)
        second = snapshot.get(proposal.second_shift_id)
        return (
            replace(first, owner_id=second.owner_id, version=proposal.base_version + 1),
            replace(second, owner_id=first.owner_id,
                    version=(proposal.second_base_version or 0) + 1),
        )
    raise ValueError(f"Unknown proposal kind: {kind}")


def _verdict(reasons: List[ReasonCode], shift_ids: Set[str],
             event_ids: Set[str]) -> ConflictVerdict:
    if any(code in HARD_REASONS for code in reasons):
        status = ConflictStatus.HARD_CONFLICT
    elif any(code in SOFT_REASONS for code in reasons):
        status = ConflictStatus.SOFT_CONFLICT
    else:
        status = ConflictStatus.CLEAN
    return ConflictVerdict(
        status=status,
        conflicting_shift_ids=frozenset(shift_ids),
        conflicting_event_ids=frozenset(event_ids),
        reason_codes=tuple(reasons)
    )


def _hard(reason: ReasonCode) -> ConflictVerdict:
    return ConflictVerdict(status=ConflictStatus.HARD_CONFLICT, reason_codes=(reason,))


def detect_conflicts(snapshot: StoreSnapshot, proposal: ChangeProposal,
                     external_events: Iterable[ExternalEvent] = (),
                     allow_multiple_all_day: bool = False) -> ConflictVerdict:
    """
    Classify a proposal as clean, soft conflict or hard conflict.

    Args:
        snapshot: Store state the proposal is evaluated against
        proposal: The change to evaluate
        external_events: Calendar events known for the affected owners
        allow_multiple_all_day: Permit several all-day shifts per owner and date

    Hard conflicts (overlap with a committed shift of the same owner, a
    missing target, a malformed range) win over soft ones (overlap with an
    unmirrored calendar event, recreating a deliberately deleted shift from
    calendar sync). Every triggered reason is reported, in evaluation order.
    """
    try:
        return _evaluate(snapshot, proposal, list(external_events), allow_multiple_all_day)
    except ShiftNotFoundError:
        return _hard(ReasonCode.TARGET_NOT_FOUND)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Proposal {proposal.proposal_id} could not be evaluated: {e}")
        return _hard(ReasonCode.INVALID_PROPOSAL)


def _evaluate(snapshot: StoreSnapshot, proposal: ChangeProposal,
              external_events: List[ExternalEvent],
              allow_multiple_all_day: bool) -> ConflictVerdict:
    reasons: List[ReasonCode] = []
    shift_ids: Set[str] = set()
    event_ids: Set[str] = set()

    def add(code: ReasonCode):
        if code not in reasons:
            reasons.append(code)

    kind = proposal.kind
    if kind is ProposalKind.CREATE:
        new_id = proposal.new_shift_id
        if snapshot.find(new_id) is not None:
            add(ReasonCode.TARGET_EXISTS)
            shift_ids.add(new_id)
        elif snapshot.is_deleted(new_id) and proposal.origin is ProposalOrigin.EXTERNAL_SYNC:
            add(ReasonCode.RESURRECTION)
            shift_ids.add(new_id)
    elif kind in (ProposalKind.MODIFY, ProposalKind.DELETE):
        if snapshot.find(proposal.target_shift_id) is None:
            return _hard(ReasonCode.TARGET_NOT_FOUND)
    elif kind is ProposalKind.SWAP:
        if proposal.target_shift_id == proposal.second_shift_id:
            return _hard(ReasonCode.INVALID_PROPOSAL)
        if (snapshot.find(proposal.target_shift_id) is None
                or snapshot.find(proposal.second_shift_id) is None):
            return _hard(ReasonCode.TARGET_NOT_FOUND)
    else:
        raise ValueError(f"Unknown proposal kind: {kind}")

    resulting = project_proposal(snapshot, proposal)
    if not all(shift.has_valid_range() for shift in resulting):
        add(ReasonCode.INVALID_RANGE)
    # A malformed range has no geometry to compare
    resulting = [shift for shift in resulting if shift.has_valid_range()]

    # The shifts a proposal replaces never conflict with their own results
    excluded = set(proposal.shift_ids)
    for shift in resulting:
        neighbours = snapshot.list_by_owner_and_range(
            shift.owner_id, shift.date - timedelta(days=1), shift.date + timedelta(days=1)
        )
        for other in neighbours:
            if other.shift_id in excluded:
                continue
            if shifts_overlap(shift, other, allow_multiple_all_day):
                add(ReasonCode.ALL_DAY_DUPLICATE if shift.is_all_day else ReasonCode.OVERLAP)
                shift_ids.add(other.shift_id)

    mirrored = snapshot.mirrored_external_ids()
    own_events = {s.external_id for s in resulting if s.external_id}
    for shift in resulting:
        for event in external_events:
            if event.external_id in mirrored or event.external_id in own_events:
                continue
            if event.owner_id is not None and event.owner_id != shift.owner_id:
                continue
            if event.overlaps_shift(shift):
                add(ReasonCode.EXTERNAL_OVERLAP)
                event_ids.add(event.external_id)

    return _verdict(reasons, shift_ids, event_ids)
