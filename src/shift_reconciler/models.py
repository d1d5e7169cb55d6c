"""
Data Model for the Shift Reconciliation System

Shifts, change proposals, conflict verdicts, change log entries and
externally observed calendar events, with camelCase JSON round-tripping
and the half-open time-range geometry shared by the detector and the store.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class SourceOrigin(Enum):
    LOCAL = "local"
    EXTERNAL_SYNC = "externalSync"


class ProposalKind(Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    SWAP = "swap"


class ProposalOrigin(Enum):
    USER = "user"
    EXTERNAL_SYNC = "externalSync"


class ConflictStatus(Enum):
    CLEAN = "clean"
    SOFT_CONFLICT = "softConflict"
    HARD_CONFLICT = "hardConflict"


class ReasonCode(Enum):
    """Symbolic reasons attached to verdicts and rejections"""
    OVERLAP = "overlap"
    ALL_DAY_DUPLICATE = "allDayDuplicate"
    EXTERNAL_OVERLAP = "externalOverlap"
    INVALID_RANGE = "invalidRange"
    TARGET_NOT_FOUND = "targetNotFound"
    TARGET_EXISTS = "targetExists"
    INVALID_PROPOSAL = "invalidProposal"
    RESURRECTION = "resurrection"
    CONCURRENT_MODIFICATION = "concurrentModification"
    DENIED = "denied"
    CANCELED = "canceled"


class Decision(Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"
    PENDING_APPROVAL = "pendingApproval"


# Shift fields a proposal payload may set
PAYLOAD_FIELDS = ("date", "start_time", "end_time", "label", "owner_id", "external_id",
                  "source_origin")


def _format_time(value: Optional[time]) -> Optional[str]:
    return value.isoformat(timespec="minutes") if value is not None else None


def _parse_time(value: Any) -> Optional[time]:
    if value is None or isinstance(value, time):
        return value
    return time.fromisoformat(value)


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def encode_payload_value(key: str, value: Any) -> Any:
    """Convert a payload value to its JSON-friendly form"""
    if key == "date" and isinstance(value, date):
        return value.isoformat()
    if key in ("start_time", "end_time") and isinstance(value, time):
        return _format_time(value)
    if key == "source_origin" and isinstance(value, SourceOrigin):
        return value.value
    return value


def parse_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Typed Shift field values for the payload keys that are present"""
    fields = {}
    for key in PAYLOAD_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if key == "date":
            value = _parse_date(value)
        elif key in ("start_time", "end_time"):
            value = _parse_time(value)
        elif key == "source_origin":
            value = SourceOrigin(value)
        fields[key] = value
    return fields


def intervals_overlap(a_start: datetime, a_end: datetime,
                      b_start: datetime, b_end: datetime) -> bool:
    """Half-open [start, end) interval intersection"""
    return a_start < b_end and b_start < a_end


@dataclass(frozen=True)
class Shift:
    """A committed work assignment for one owner"""
    shift_id: str
    date: date
    start_time: Optional[time]
    end_time: Optional[time]
    owner_id: str
    label: str = ""
    source_origin: SourceOrigin = SourceOrigin.LOCAL
    version: int = 1
    external_id: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.start_time is None and self.end_time is None

    def has_valid_range(self) -> bool:
        """Timed shifts need both ends and a non-zero length"""
        if self.is_all_day:
            return True
        if self.start_time is None or self.end_time is None:
            return False
        return self.start_time != self.end_time

    def time_range(self) -> Optional[Tuple[datetime, datetime]]:
        """
        Return the [start, end) datetimes of a timed shift, or None for an
        all-day shift. An end before the start runs into the next day.
        """
        if self.is_all_day:
            return None
        if not self.has_valid_range():
            raise ValueError(f"Shift {self.shift_id} has a malformed time range")
        start = datetime.combine(self.date, self.start_time)
        end = datetime.combine(self.date, self.end_time)
        if end < start:
            end += timedelta(days=1)
        return start, end

    def with_payload(self, payload: Dict[str, Any]) -> 'Shift':
        """Return a copy with the payload's field values applied"""
        return replace(self, **parse_payload(payload))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shiftId": self.shift_id,
            "date": self.date.isoformat(),
            "startTime": _format_time(self.start_time),
            "endTime": _format_time(self.end_time),
            "ownerId": self.owner_id,
            "label": self.label,
            "sourceOrigin": self.source_origin.value,
            "version": self.version,
            "externalId": self.external_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Shift':
        return cls(
            shift_id=data["shiftId"],
            date=_parse_date(data["date"]),
            start_time=_parse_time(data.get("startTime")),
            end_time=_parse_time(data.get("endTime")),
            owner_id=data["ownerId"],
            label=data.get("label", ""),
            source_origin=SourceOrigin(data.get("sourceOrigin", SourceOrigin.LOCAL.value)),
            version=data.get("version", 1),
            external_id=data.get("externalId")
        )


def shifts_overlap(a: Shift, b: Shift, allow_multiple_all_day: bool = False) -> bool:
    """
    Decide whether two shifts collide. Timed shifts are compared as half-open
    ranges; all-day shifts never collide with timed ones but collide with each
    other on the same date unless multiple all-day shifts are allowed.
    Owners are not compared here.
    """
    if a.is_all_day or b.is_all_day:
        if a.is_all_day and b.is_all_day:
            return a.date == b.date and not allow_multiple_all_day
        return False
    a_start, a_end = a.time_range()
    b_start, b_end = b.time_range()
    return intervals_overlap(a_start, a_end, b_start, b_end)


@dataclass(frozen=True)
class ExternalEvent:
    """An event read from an external calendar provider"""
    external_id: str
    start: datetime
    end: datetime
    title: str = ""
    owner_id: Optional[str] = None

    def overlaps_shift(self, shift: Shift) -> bool:
        if shift.is_all_day or not shift.has_valid_range():
            return False
        start, end = shift.time_range()
        return intervals_overlap(self.start, self.end, start, end)

    def fingerprint(self) -> Tuple[str, str, str]:
        return self.external_id, self.start.isoformat(), self.end.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalId": self.external_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "title": self.title,
            "ownerId": self.owner_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExternalEvent':
        return cls(
            external_id=data["externalId"],
            start=_parse_datetime(data["start"]),
            end=_parse_datetime(data["end"]),
            title=data.get("title", ""),
            owner_id=data.get("ownerId")
        )


@dataclass(frozen=True)
class ChangeProposal:
    """A requested mutation of the schedule, not yet authoritative"""
    kind: ProposalKind
    target_shift_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    origin: ProposalOrigin = ProposalOrigin.USER
    base_version: int = 0
    second_shift_id: Optional[str] = None
    second_base_version: Optional[int] = None
    requested_by: Optional[str] = None
    reverts_sequence: Optional[int] = None
    proposal_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: datetime = field(default_factory=datetime.now)

    @property
    def new_shift_id(self) -> str:
        """Shift id a create proposal will commit under"""
        return self.target_shift_id or self.payload.get("shift_id") or self.proposal_id

    @property
    def shift_ids(self) -> Tuple[str, ...]:
        if self.kind is ProposalKind.CREATE:
            return (self.new_shift_id,)
        if self.kind is ProposalKind.SWAP:
            return (self.target_shift_id, self.second_shift_id)
        return (self.target_shift_id,)

    @property
    def external_id(self) -> Optional[str]:
        return self.payload.get("external_id")

    @classmethod
    def for_create(cls, owner_id: str, shift_date: date, start_time: Optional[time] = None,
                   end_time: Optional[time] = None, label: str = "",
                   origin: ProposalOrigin = ProposalOrigin.USER,
                   external_id: Optional[str] = None, shift_id: Optional[str] = None,
                   base_version: int = 0, requested_by: Optional[str] = None,
                   reverts_sequence: Optional[int] = None,
                   source_origin: Optional[SourceOrigin] = None) -> 'ChangeProposal':
        payload = {
            "shift_id": shift_id or uuid.uuid4().hex,
            "date": shift_date.isoformat(),
            "start_time": _format_time(start_time),
            "end_time": _format_time(end_time),
            "label": label,
            "owner_id": owner_id,
        }
        if external_id is not None:
            payload["external_id"] = external_id
        if source_origin is not None:
            payload["source_origin"] = source_origin.value
        return cls(
            kind=ProposalKind.CREATE,
            target_shift_id=shift_id,
            payload=payload,
            origin=origin,
            base_version=base_version,
            requested_by=requested_by or owner_id,
            reverts_sequence=reverts_sequence
        )

    @classmethod
    def for_modify(cls, shift: Shift, origin: ProposalOrigin = ProposalOrigin.USER,
                   requested_by: Optional[str] = None,
                   reverts_sequence: Optional[int] = None, **changes) -> 'ChangeProposal':
        unknown = set(changes) - set(PAYLOAD_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported shift fields: {', '.join(sorted(unknown))}")
        payload = {key: encode_payload_value(key, value) for key, value in changes.items()}
        return cls(
            kind=ProposalKind.MODIFY,
            target_shift_id=shift.shift_id,
            payload=payload,
            origin=origin,
            base_version=shift.version,
            requested_by=requested_by or shift.owner_id,
            reverts_sequence=reverts_sequence
        )

    @classmethod
    def for_delete(cls, shift: Shift, origin: ProposalOrigin = ProposalOrigin.USER,
                   requested_by: Optional[str] = None,
                   reverts_sequence: Optional[int] = None) -> 'ChangeProposal':
        return cls(
            kind=ProposalKind.DELETE,
            target_shift_id=shift.shift_id,
            origin=origin,
            base_version=shift.version,
            requested_by=requested_by or shift.owner_id,
            reverts_sequence=reverts_sequence
        )

    @classmethod
    def for_swap(cls, first: Shift, second: Shift, requested_by: Optional[str] = None,
                 reverts_sequence: Optional[int] = None) -> 'ChangeProposal':
        return cls(
            kind=ProposalKind.SWAP,
            target_shift_id=first.shift_id,
            base_version=first.version,
            second_shift_id=second.shift_id,
            second_base_version=second.version,
            requested_by=requested_by or first.owner_id,
            reverts_sequence=reverts_sequence
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "kind": self.kind.value,
            "targetShiftId": self.target_shift_id,
            "payload": dict(self.payload),
            "origin": self.origin.value,
            "submittedAt": self.submitted_at.isoformat(),
            "baseVersion": self.base_version,
            "secondShiftId": self.second_shift_id,
            "secondBaseVersion": self.second_base_version,
            "requestedBy": self.requested_by,
            "revertsSequence": self.reverts_sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeProposal':
        return cls(
            proposal_id=data["proposalId"],
            kind=ProposalKind(data["kind"]),
            target_shift_id=data.get("targetShiftId"),
            payload=dict(data.get("payload", {})),
            origin=ProposalOrigin(data.get("origin", ProposalOrigin.USER.value)),
            submitted_at=_parse_datetime(data["submittedAt"]),
            base_version=data.get("baseVersion", 0),
            second_shift_id=data.get("secondShiftId"),
            second_base_version=data.get("secondBaseVersion"),
            requested_by=data.get("requestedBy"),
            reverts_sequence=data.get("revertsSequence")
        )


@dataclass(frozen=True)
class ConflictVerdict:
    """Classification of a proposal against current state"""
    status: ConflictStatus
    conflicting_shift_ids: FrozenSet[str] = frozenset()
    conflicting_event_ids: FrozenSet[str] = frozenset()
    reason_codes: Tuple[ReasonCode, ...] = ()

    @classmethod
    def clean(cls) -> 'ConflictVerdict':
        return cls(status=ConflictStatus.CLEAN)

    @property
    def is_clean(self) -> bool:
        return self.status is ConflictStatus.CLEAN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "conflictingShiftIds": sorted(self.conflicting_shift_ids),
            "conflictingEventIds": sorted(self.conflicting_event_ids),
            "reasonCodes": [code.value for code in self.reason_codes]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConflictVerdict':
        return cls(
            status=ConflictStatus(data["status"]),
            conflicting_shift_ids=frozenset(data.get("conflictingShiftIds", [])),
            conflicting_event_ids=frozenset(data.get("conflictingEventIds", [])),
            reason_codes=tuple(ReasonCode(code) for code in data.get("reasonCodes", []))
        )


@dataclass(frozen=True)
class ChangeLogEntry:
    """Immutable record of one workflow decision"""
    proposal: ChangeProposal
    decision: Decision
    verdict: ConflictVerdict
    timestamp: datetime = field(default_factory=datetime.now)
    resulting_shifts: Tuple[Shift, ...] = ()
    previous_shifts: Tuple[Shift, ...] = ()
    removed_shift_ids: Tuple[str, ...] = ()
    reason: Optional[ReasonCode] = None
    references_sequence: Optional[int] = None
    sequence_number: int = 0

    @property
    def proposal_id(self) -> str:
        return self.proposal.proposal_id

    @property
    def resulting_shift_snapshot(self) -> Optional[Shift]:
        return self.resulting_shifts[0] if self.resulting_shifts else None

    @property
    def touched_shift_ids(self) -> Tuple[str, ...]:
        if self.decision is not Decision.COMMITTED:
            return ()
        return tuple(s.shift_id for s in self.resulting_shifts) + self.removed_shift_ids

    def committed_version(self, shift_id: str) -> Optional[int]:
        """Version the given shift reached through this entry, if it was touched"""
        for shift in self.resulting_shifts:
            if shift.shift_id == shift_id:
                return shift.version
        if shift_id in self.removed_shift_ids:
            if shift_id == self.proposal.second_shift_id:
                return self.proposal.second_base_version + 1
            return self.proposal.base_version + 1
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequenceNumber": self.sequence_number,
            "proposalId": self.proposal_id,
            "proposal": self.proposal.to_dict(),
            "decision": self.decision.value,
            "verdict": self.verdict.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "resultingShifts": [s.to_dict() for s in self.resulting_shifts],
            "previousShifts": [s.to_dict() for s in self.previous_shifts],
            "removedShiftIds": list(self.removed_shift_ids),
            "reason": self.reason.value if self.reason else None,
            "referencesSequence": self.references_sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeLogEntry':
        return cls(
            sequence_number=data["sequenceNumber"],
            proposal=ChangeProposal.from_dict(data["proposal"]),
            decision=Decision(data["decision"]),
            verdict=ConflictVerdict.from_dict(data["verdict"]),
            timestamp=_parse_datetime(data["timestamp"]),
            resulting_shifts=tuple(Shift.from_dict(s) for s in data.get("resultingShifts", [])),
            previous_shifts=tuple(Shift.from_dict(s) for s in data.get("previousShifts", [])),
            removed_shift_ids=tuple(data.get("removedShiftIds", [])),
            reason=ReasonCode(data["reason"]) if data.get("reason") else None,
            references_sequence=data.get("referencesSequence")
        )
