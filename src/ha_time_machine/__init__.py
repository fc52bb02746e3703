from .backup_manager import BackupManager
from .cli import cli
from .config import AppSettings, load_settings
from .errors import TimeMachineError
from .folder_backend import FolderBackend
from .history_backend import VersionedHistoryBackend
from .models import BackendMode, BackupKind, FeatureFlags, ScheduleJob, Snapshot
from .monitor import ChangeWatcher
from .retention import RetentionPolicy
from .scanner import PathScanner
from .schedule_store import ScheduleStore
from .scheduler import CronExpression, ScheduleEngine
from .writer import SnapshotWriter

__version__ = "0.1.0"

__all__ = [
    "AppSettings",
    "BackendMode",
    "BackupKind",
    "BackupManager",
    "ChangeWatcher",
    "CronExpression",
    "FeatureFlags",
    "FolderBackend",
    "PathScanner",
    "RetentionPolicy",
    "ScheduleEngine",
    "ScheduleJob",
    "ScheduleStore",
    "Snapshot",
    "SnapshotWriter",
    "TimeMachineError",
    "VersionedHistoryBackend",
    "cli",
    "load_settings",
]
