"""
Change Log for the Shift Reconciliation System

Append-only, totally ordered record of every workflow decision. Entries are
kept in memory and, when a log file is configured, written as one JSON line
each and synced to disk before the append returns.
"""

import json
import logging
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import DataFileCorruptedError, StorageIOError
from .models import ChangeLogEntry

logger = logging.getLogger(__name__)


class ChangeLogRetentionPolicy(Enum):
    """How far back exports and history views reach"""
    DAYS_30 = "30_days"
    DAYS_90 = "90_days"
    MONTHS_6 = "6_months"
    YEAR_1 = "1_year"
    YEARS_2 = "2_years"
    FOREVER = "forever"

    @property
    def display_name(self) -> str:
        return {
            "30_days": "30 Days",
            "90_days": "90 Days",
            "6_months": "6 Months",
            "1_year": "1 Year",
            "2_years": "2 Years",
            "forever": "Forever",
        }[self.value]

    def cutoff_date(self, base_date: Optional[datetime] = None) -> Optional[datetime]:
        """Oldest timestamp still inside the window, or None to keep everything"""
        base_date = base_date or datetime.now()
        if self is ChangeLogRetentionPolicy.DAYS_30:
            return base_date - timedelta(days=30)
        elif self is ChangeLogRetentionPolicy.DAYS_90:
            return base_date - timedelta(days=90)
        elif self is ChangeLogRetentionPolicy.MONTHS_6:
            return _subtract_months(base_date, 6)
        elif self is ChangeLogRetentionPolicy.YEAR_1:
            return _subtract_months(base_date, 12)
        elif self is ChangeLogRetentionPolicy.YEARS_2:
            return _subtract_months(base_date, 24)
        elif self is ChangeLogRetentionPolicy.FOREVER:
            return None
        raise ValueError(f"Unknown retention policy: {self}")


def _subtract_months(value: datetime, months: int) -> datetime:
    month_index = value.year * 12 + value.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last valid day, e.g. 31 August minus six months
    for day in range(value.day, 0, -1):
        try:
            return value.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot subtract {months} months from {value}")


class ChangeLog:
    """Append-only ordered record of proposals and their outcomes"""

    def __init__(self, log_file: Optional[str] = None):
        self.log_file = Path(log_file) if log_file else None
        self._lock = threading.Lock()
        self._entries: List[ChangeLogEntry] = []
        if self.log_file is not None:
            self._entries = self._load_entries()

    def _load_entries(self) -> List[ChangeLogEntry]:
        """Read every line of the log file, validating sequence continuity"""
        if not self.log_file.exists():
            logger.info(f"No change log found at {self.log_file}, starting empty")
            return []

        entries = []
        try:
            with open(self.log_file, 'r', encoding='utf-8') as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    entry = ChangeLogEntry.from_dict(json.loads(line))
                    if entry.sequence_number != len(entries) + 1:
                        raise DataFileCorruptedError(
                            f"Change log line {line_number} has sequence "
                            f"{entry.sequence_number}, expected {len(entries) + 1}"
                        )
                    entries.append(entry)
        except json.JSONDecodeError as e:
            raise DataFileCorruptedError(f"Change log {self.log_file} is corrupted: {e}") from e
        except (IOError, OSError) as e:
            raise StorageIOError(f"Failed to read change log {self.log_file}: {e}") from e

        logger.info(f"Loaded {len(entries)} change log entries from {self.log_file}")
        return entries

    def _write_line(self, entry: ChangeLogEntry):
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except (IOError, OSError) as e:
            logger.error(f"Failed to append change log entry {entry.sequence_number}: {e}",
                         exc_info=True)
            raise StorageIOError(f"Failed to append to change log: {e}") from e

    def append(self, entry: ChangeLogEntry) -> int:
        """Append an entry and return the sequence number it was given"""
        with self._lock:
            sequence_number = len(self._entries) + 1
            stored = replace(entry, sequence_number=sequence_number)
            if self.log_file is not None:
                self._write_line(stored)
            self._entries.append(stored)

        logger.debug(
            f"Change log #{sequence_number}: {stored.decision.value} "
            f"proposal {stored.proposal_id}"
        )
        return sequence_number

    def read_from(self, sequence_number: int = 0) -> Iterator[ChangeLogEntry]:
        """
        Lazily yield entries whose sequence number is at least the given one.

        The iteration stops at the length the log had when it was requested,
        so it is always finite; call again with a later sequence number to
        pick up entries appended since.
        """
        end = len(self._entries)
        index = max(sequence_number, 1) - 1
        while index < end:
            yield self._entries[index]
            index += 1

    def latest(self) -> int:
        """Sequence number of the newest entry, 0 when the log is empty"""
        return len(self._entries)

    def get(self, sequence_number: int) -> Optional[ChangeLogEntry]:
        if 1 <= sequence_number <= len(self._entries):
            return self._entries[sequence_number - 1]
        return None

    def entries_for_proposal(self, proposal_id: str) -> List[ChangeLogEntry]:
        return [entry for entry in self.read_from(0) if entry.proposal_id == proposal_id]

    def history_for_shift(self, shift_id: str) -> List[ChangeLogEntry]:
        """Committed entries that touched the given shift, oldest first"""
        return [entry for entry in self.read_from(0) if shift_id in entry.touched_shift_ids]

    def entries_since(self, cutoff: Optional[datetime]) -> List[ChangeLogEntry]:
        if cutoff is None:
            return list(self.read_from(0))
        return [entry for entry in self.read_from(0) if entry.timestamp >= cutoff]

    def __len__(self) -> int:
        return len(self._entries)
