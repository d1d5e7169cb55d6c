"""
Settings for the Shift Reconciliation System

Settings live in a JSON file next to the data. Missing keys are filled
from defaults so older settings files keep working.
"""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .change_log import ChangeLogRetentionPolicy
from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ReconcilerSettings:
    """Runtime settings for the reconciliation services"""
    data_dir: str = "data"
    shift_store_file: str = "shifts.json"
    change_log_file: str = "change_log.jsonl"
    calendar_feed_file: Optional[str] = None
    allow_multiple_all_day: bool = False
    sync_interval_seconds: int = 300
    sync_window_days: int = 30
    retention_policy: str = ChangeLogRetentionPolicy.FOREVER.value
    log_level: str = "INFO"

    @property
    def shift_store_path(self) -> Path:
        return Path(self.data_dir) / self.shift_store_file

    @property
    def change_log_path(self) -> Path:
        return Path(self.data_dir) / self.change_log_file

    @property
    def retention(self) -> ChangeLogRetentionPolicy:
        return ChangeLogRetentionPolicy(self.retention_policy)

    def validate(self):
        """Raise ConfigError for values the services cannot run with"""
        if self.sync_interval_seconds <= 0:
            raise ConfigError("sync_interval_seconds must be positive")
        if self.sync_window_days <= 0:
            raise ConfigError("sync_window_days must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level: {self.log_level}")
        try:
            ChangeLogRetentionPolicy(self.retention_policy)
        except ValueError:
            raise ConfigError(f"Unknown retention policy: {self.retention_policy}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataDir": self.data_dir,
            "shiftStoreFile": self.shift_store_file,
            "changeLogFile": self.change_log_file,
            "calendarFeedFile": self.calendar_feed_file,
            "allowMultipleAllDay": self.allow_multiple_all_day,
            "syncIntervalSeconds": self.sync_interval_seconds,
            "syncWindowDays": self.sync_window_days,
            "retentionPolicy": self.retention_policy,
            "logLevel": self.log_level
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconcilerSettings':
        defaults = asdict(cls())
        return cls(
            data_dir=data.get("dataDir", defaults["data_dir"]),
            shift_store_file=data.get("shiftStoreFile", defaults["shift_store_file"]),
            change_log_file=data.get("changeLogFile", defaults["change_log_file"]),
            calendar_feed_file=data.get("calendarFeedFile", defaults["calendar_feed_file"]),
            allow_multiple_all_day=bool(data.get("allowMultipleAllDay",
                                                 defaults["allow_multiple_all_day"])),
            sync_interval_seconds=int(data.get("syncIntervalSeconds",
                                               defaults["sync_interval_seconds"])),
            sync_window_days=int(data.get("syncWindowDays", defaults["sync_window_days"])),
            retention_policy=data.get("retentionPolicy", defaults["retention_policy"]),
            log_level=data.get("logLevel", defaults["log_level"])
        )


def load_settings(settings_file: Optional[str] = None) -> ReconcilerSettings:
    """Load settings from a JSON file, or defaults when there is none"""
    if settings_file is None:
        return ReconcilerSettings()

    path = Path(settings_file)
    if not path.exists():
        logger.info(f"No settings file at {path}, using defaults")
        settings = ReconcilerSettings()
    else:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                settings = ReconcilerSettings.from_dict(json.load(f))
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Cannot read settings file {path}: {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value in settings file {path}: {e}") from e

    settings.validate()
    return settings


def save_settings(settings: ReconcilerSettings, settings_file: str):
    """Write settings as JSON, creating the parent directory if needed"""
    settings.validate()
    path = Path(settings_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(settings.to_dict(), f, indent=2, ensure_ascii=False)
    except (IOError, OSError) as e:
        raise ConfigError(f"Cannot write settings file {path}: {e}") from e
