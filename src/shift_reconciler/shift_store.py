"""
Shift Store for the Shift Reconciliation System

Authoritative table of committed shifts. Handles JSON persistence with
atomic saves and backup recovery, point-in-time snapshots for conflict
detection, and the single mutation entry point used by approved changes.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from .errors import (
    DataFileCorruptedError, ShiftNotFoundError, StaleVersionError, StorageIOError
)
from .models import ChangeLogEntry, Decision, ProposalKind, Shift, shifts_overlap

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = "1.0.0"


def _sort_key(shift: Shift):
    # All-day shifts sort ahead of timed shifts on the same date
    return shift.date, shift.start_time is not None, shift.start_time or time.min, shift.shift_id


class KeyedLocks:
    """Per-key mutual exclusion; unrelated keys never block each other"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition order keeps multi-key holders deadlock free
        locks = [self._lock_for(key) for key in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class StoreSnapshot:
    """Immutable point-in-time view of the store"""

    def __init__(self, shifts: Dict[str, Shift], versions: Dict[str, int],
                 tombstones: Dict[str, Dict[str, Any]]):
        self._shifts = dict(shifts)
        self._versions = dict(versions)
        self._tombstones = {key: dict(value) for key, value in tombstones.items()}

    def get(self, shift_id: str) -> Shift:
        shift = self._shifts.get(shift_id)
        if shift is None:
            raise ShiftNotFoundError(shift_id)
        return shift

    def find(self, shift_id: str) -> Optional[Shift]:
        return self._shifts.get(shift_id)

    def all_shifts(self) -> List[Shift]:
        return sorted(self._shifts.values(), key=_sort_key)

    def list_by_owner_and_range(self, owner_id: str, start_date: date,
                                end_date: date) -> List[Shift]:
        """Shifts of one owner between two dates inclusive, by date then start time"""
        matches = [
            shift for shift in self._shifts.values()
            if shift.owner_id == owner_id and start_date <= shift.date <= end_date
        ]
        return sorted(matches, key=_sort_key)

    def last_version(self, shift_id: str) -> int:
        """Last committed version of a live or deleted shift id, 0 if never seen"""
        return self._versions.get(shift_id, 0)

    def is_deleted(self, shift_id: str) -> bool:
        return shift_id in self._tombstones

    def tombstone(self, shift_id: str) -> Optional[Dict[str, Any]]:
        return self._tombstones.get(shift_id)

    def tombstone_for_external_id(self, external_id: str) -> Optional[str]:
        """Shift id of a deleted shift that mirrored the given calendar event"""
        for shift_id, info in self._tombstones.items():
            if info.get("externalId") == external_id:
                return shift_id
        return None

    def mirrored_external_ids(self) -> Set[str]:
        return {s.external_id for s in self._shifts.values() if s.external_id}

    def shift_for_external_id(self, external_id: str) -> Optional[Shift]:
        for shift in self._shifts.values():
            if shift.external_id == external_id:
                return shift
        return None


class ShiftStore:
    """Owns all committed shifts; mutated only through committed change log entries"""

    def __init__(self, data_file: Optional[str] = None, allow_multiple_all_day: bool = False):
        self.data_file = Path(data_file) if data_file else None
        self.allow_multiple_all_day = allow_multiple_all_day
        self._state_lock = threading.RLock()
        self._commit_locks = KeyedLocks()
        self._save_lock = threading.Lock()
        self._shifts: Dict[str, Shift] = {}
        self._versions: Dict[str, int] = {}
        self._tombstones: Dict[str, Dict[str, Any]] = {}
        # Set when memory holds committed changes the data file does not
        self.unsaved_changes = False
        if self.data_file is not None:
            self._load_state(self._load_or_create_data())

    # Persistence
    def _load_or_create_data(self) -> Dict[str, Any]:
        """Load the store file, falling back to its backup when it is unreadable"""
        backup_file = self.data_file.with_suffix('.bak')
        if self.data_file.exists():
            try:
                with open(self.data_file, 'r', encoding='utf-8') as f:
                    return self._validate_and_migrate_data(json.load(f))
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"Error loading shift store {self.data_file}: {e}")
                if not backup_file.exists():
                    raise DataFileCorruptedError(
                        f"Shift store corrupted and no backup available: {e}"
                    )
        elif not backup_file.exists():
            logger.info(f"No shift store found at {self.data_file}, starting empty")
            return self._create_default_data()

        try:
            logger.info(f"Attempting recovery from backup file {backup_file}")
            with open(backup_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            backup_file.replace(self.data_file)
            logger.info("Successfully recovered shift store from backup")
            return self._validate_and_migrate_data(data)
        except (json.JSONDecodeError, IOError) as e:
            raise DataFileCorruptedError(f"Shift store backup also corrupted: {e}")

    def _create_default_data(self) -> Dict[str, Any]:
        return {
            "settings": {
                "formatVersion": STORE_FORMAT_VERSION,
                "dataFile": str(self.data_file)
            },
            "shifts": [],
            "versions": {},
            "tombstones": {}
        }

    def _validate_and_migrate_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill in any sections missing from older files"""
        default_data = self._create_default_data()
        for key in default_data:
            if key not in data:
                data[key] = default_data[key]
        # Versions were not tracked separately in the first format
        for shift_data in data["shifts"]:
            data["versions"].setdefault(shift_data["shiftId"], shift_data.get("version", 1))
        return data

    def _load_state(self, data: Dict[str, Any]):
        self._shifts = {s["shiftId"]: Shift.from_dict(s) for s in data["shifts"]}
        self._versions = {key: int(value) for key, value in data["versions"].items()}
        self._tombstones = dict(data["tombstones"])

    def _prepare_data_for_json(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "settings": {
                    "formatVersion": STORE_FORMAT_VERSION,
                    "dataFile": str(self.data_file),
                    "savedAt": datetime.now().isoformat()
                },
                "shifts": [s.to_dict() for s in sorted(self._shifts.values(), key=_sort_key)],
                "versions": dict(self._versions),
                "tombstones": {key: dict(value) for key, value in self._tombstones.items()}
            }

    def _validate_saved_data(self):
        with open(self.data_file, 'r', encoding='utf-8') as f:
            saved_data = json.load(f)
        for key in ("settings", "shifts", "versions", "tombstones"):
            if key not in saved_data:
                raise StorageIOError(f"Required section '{key}' missing from saved shift store")

    def save_data(self):
        """Write the store atomically, keeping the previous file as a backup"""
        if self.data_file is None:
            return
        with self._save_lock:
            self._write_data_file()
            self.unsaved_changes = False

    def _write_data_file(self):
        temp_file = self.data_file.with_suffix('.tmp')
        backup_file = self.data_file.with_suffix('.bak')
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(self._prepare_data_for_json(), f, indent=2, ensure_ascii=False)
            if self.data_file.exists():
                self.data_file.replace(backup_file)
            temp_file.replace(self.data_file)
            self._validate_saved_data()
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.error(f"I/O error while saving shift store: {e}", exc_info=True)
            if backup_file.exists() and not self.data_file.exists():
                backup_file.replace(self.data_file)
            raise StorageIOError(f"Failed to save shift store: {e}") from e
        finally:
            if temp_file.exists():
                try:
                    temp_file.unlink()
                except OSError as cleanup_e:
                    logger.error(f"Failed to clean up temporary file {temp_file}: {cleanup_e}")

    # Reads
    def get(self, shift_id: str) -> Shift:
        shift = self._shifts.get(shift_id)
        if shift is None:
            raise ShiftNotFoundError(shift_id)
        return shift

    def find(self, shift_id: str) -> Optional[Shift]:
        return self._shifts.get(shift_id)

    def list_by_owner_and_range(self, owner_id: str, start_date: date,
                                end_date: date) -> List[Shift]:
        return self.snapshot().list_by_owner_and_range(owner_id, start_date, end_date)

    def snapshot(self) -> StoreSnapshot:
        with self._state_lock:
            return StoreSnapshot(self._shifts, self._versions, self._tombstones)

    def __len__(self) -> int:
        return len(self._shifts)

    # Mutation
    def apply_committed(self, entry: ChangeLogEntry,
                        journal: Optional[Callable[[ChangeLogEntry], Any]] = None) -> List[Shift]:
        """
        Apply a committed change log entry.

        Args:
            entry: Entry whose decision is committed, carrying the proposal
                and the resulting shift snapshots
            journal: Called with the entry once every check has passed and
                before the store changes (normally ChangeLog.append). If it
                raises, the store is left untouched.

        A failed file save after the journal call does not undo the commit;
        it sets unsaved_changes and the next successful save catches up.

        Returns the resulting shifts; empty when the entry deleted a shift.
        Raises StaleVersionError when the entry no longer matches current state.
        """
        if entry.decision is not Decision.COMMITTED:
            raise ValueError(f"Only committed entries can be applied, got {entry.decision.value}")

        proposal = entry.proposal
        owners = {s.owner_id for s in entry.resulting_shifts}
        owners.update(s.owner_id for s in entry.previous_shifts)
        lock_keys = [f"shift:{sid}" for sid in proposal.shift_ids]
        lock_keys.extend(f"owner:{owner}" for owner in owners)

        with self._commit_locks.hold(lock_keys):
            self._check_base_versions(entry)
            self._check_resulting_shifts(entry)
            if journal is not None:
                journal(entry)
            with self._state_lock:
                for shift in entry.resulting_shifts:
                    self._shifts[shift.shift_id] = shift
                    self._versions[shift.shift_id] = shift.version
                    self._tombstones.pop(shift.shift_id, None)
                for shift_id in entry.removed_shift_ids:
                    removed = self._shifts.pop(shift_id)
                    version = entry.committed_version(shift_id)
                    self._versions[shift_id] = version
                    self._tombstones[shift_id] = {
                        "version": version,
                        "ownerId": removed.owner_id,
                        "externalId": removed.external_id,
                        "date": removed.date.isoformat()
                    }
            try:
                self.save_data()
            except StorageIOError as e:
                # The journal already holds the entry, so the commit stands
                self.unsaved_changes = True
                logger.error(
                    f"Proposal {proposal.proposal_id} is committed in the change log but the "
                    f"shift store file is behind until the next save: {e}"
                )

        logger.info(
            f"Applied {proposal.kind.value} proposal {proposal.proposal_id} "
            f"to shifts {', '.join(entry.touched_shift_ids)}"
        )
        return list(entry.resulting_shifts)

    def _check_base_versions(self, entry: ChangeLogEntry):
        proposal = entry.proposal
        kind = proposal.kind
        if kind is ProposalKind.CREATE:
            shift_id = proposal.new_shift_id
            current = self._shifts.get(shift_id)
            if current is not None:
                raise StaleVersionError(shift_id, proposal.base_version, current.version,
                                        "shift already exists")
            last = self._versions.get(shift_id, 0)
            if last != proposal.base_version:
                raise StaleVersionError(shift_id, proposal.base_version, last)
        elif kind in (ProposalKind.MODIFY, ProposalKind.DELETE):
            self._expect_version(proposal.target_shift_id, proposal.base_version)
        elif kind is ProposalKind.SWAP:
            self._expect_version(proposal.target_shift_id, proposal.base_version)
            self._expect_version(proposal.second_shift_id, proposal.second_base_version)
        else:
            raise ValueError(f"Unknown proposal kind: {kind}")

    def _expect_version(self, shift_id: str, expected: Optional[int]):
        current = self._shifts.get(shift_id)
        if current is None:
            raise StaleVersionError(shift_id, expected, self._versions.get(shift_id),
                                    "shift no longer exists")
        if current.version != expected:
            raise StaleVersionError(shift_id, expected, current.version)

    def _check_resulting_shifts(self, entry: ChangeLogEntry):
        """Re-check the no-overlap invariant against state as it is now"""
        touched = set(entry.proposal.shift_ids)
        with self._state_lock:
            current = list(self._shifts.values())
        for shift in entry.resulting_shifts:
            if not shift.has_valid_range():
                raise ValueError(f"Shift {shift.shift_id} has a malformed time range")
            for other in current:
                if other.shift_id in touched or other.owner_id != shift.owner_id:
                    continue
                if shifts_overlap(shift, other, self.allow_multiple_all_day):
                    raise StaleVersionError(
                        shift.shift_id, entry.proposal.base_version,
                        self._versions.get(shift.shift_id, 0),
                        f"overlaps committed shift {other.shift_id}"
                    )

    @classmethod
    def replay(cls, entries: Iterable[ChangeLogEntry], data_file: Optional[str] = None,
               allow_multiple_all_day: bool = False) -> 'ShiftStore':
        """Rebuild a store by re-applying the committed entries of a change log"""
        store = cls(allow_multiple_all_day=allow_multiple_all_day)
        applied = 0
        for entry in entries:
            if entry.decision is Decision.COMMITTED:
                store.apply_committed(entry)
                applied += 1
        logger.info(f"Replayed {applied} committed entries into a fresh shift store")
        if data_file:
            store.data_file = Path(data_file)
            store.save_data()
        return store
