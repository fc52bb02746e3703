from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from .backend import SnapshotBackend
from .config import AppSettings, home_assistant_credentials_configured, load_settings
from .errors import BackupRootNotFound, InvalidInput
from .folder_backend import FolderBackend
from .history_backend import VersionedHistoryBackend
from .models import (
    BackendMode,
    BackupKind,
    BackupResult,
    FileTreeNode,
    RestoreResult,
    ScheduleJob,
    Snapshot,
    WatchEvent,
)
from .paths import reject_parent_references
from .restore import RestoreService
from .scanner import PathScanner, SnapshotRef, validate_backup_root
from .writer import Clock, SnapshotWriter, open_backend, utc_now, writer_lock


class BackupManager:
    """Entry point for every operation; settings are re-read on each call."""

    def __init__(
        self,
        settings_loader: Callable[[], AppSettings] = load_settings,
        clock: Clock = utc_now,
    ):
        self.settings_loader = settings_loader
        self.clock = clock
        self.scanner = PathScanner()

    def settings(self) -> AppSettings:
        return self.settings_loader()

    def backup_root(self, settings: AppSettings | None = None) -> Path:
        settings = settings or self.settings()
        return reject_parent_references(settings.backup_root)

    def backend(self, settings: AppSettings | None = None) -> SnapshotBackend:
        settings = settings or self.settings()
        return open_backend(settings.backend_mode, self.backup_root(settings))

    def writer(self, settings: AppSettings) -> SnapshotWriter:
        return SnapshotWriter(settings.backend_mode, settings.features, clock=self.clock)

    def scan(self, root: Path | None = None) -> list[SnapshotRef]:
        root = reject_parent_references(root) if root else self.backup_root()
        refs = self.scanner.scan(root)
        logger.info(f"Found {len(refs)} backup folders under {root}")
        return refs

    def validate_backup_root(self, path: Path) -> bool:
        return validate_backup_root(reject_parent_references(path))

    def backup_now(
        self,
        kind: BackupKind = BackupKind.MANUAL,
        timezone: str | None = None,
        source: Path | None = None,
        destination: Path | None = None,
        retention: bool = True,
    ) -> BackupResult:
        settings = self.settings()
        source = Path(source) if source else settings.live_config_path
        destination = reject_parent_references(destination) if destination else self.backup_root(settings)

        return self.writer(settings).write(
            source,
            destination,
            trigger=kind,
            timezone=timezone,
            retention_enabled=retention and settings.retention_enabled,
            retention_count=settings.retention_count,
        )

    def run_scheduled_job(self, job: ScheduleJob) -> BackupResult:
        settings = self.settings()
        source = Path(job.source_path) if job.source_path else settings.live_config_path
        destination = (
            reject_parent_references(job.destination_path)
            if job.destination_path
            else self.backup_root(settings)
        )

        result = self.writer(settings).write(
            source,
            destination,
            trigger=BackupKind.SCHEDULED,
            timezone=job.timezone,
            retention_enabled=job.retention_enabled,
            retention_count=job.retention_count,
        )
        if result.created:
            logger.info(f"Scheduled backup for job {job.id} written to {result.location}")
        else:
            logger.info(f"Scheduled backup for job {job.id}: {result.message}")
        return result

    def autosave(self, event: WatchEvent) -> BackupResult:
        settings = self.settings()
        return self.writer(settings).autosave(
            settings.live_config_path,
            self.backup_root(settings),
            event.path,
            retention_enabled=settings.retention_enabled,
            retention_count=settings.retention_count,
        )

    def list_snapshots(self) -> list[Snapshot]:
        backend = self.backend()
        if isinstance(backend, FolderBackend) and not backend.root.is_dir():
            raise BackupRootNotFound(backend.root)
        return backend.list_snapshots()

    def diff(self, snapshot_id: str, file_path: str | None = None) -> str:
        return self.backend().diff(snapshot_id, file_path)

    def list_files(self, snapshot_id: str) -> list[str]:
        return self.backend().list_files(snapshot_id)

    def tree(self, snapshot_id: str | None = None) -> list[FileTreeNode]:
        return self.backend().file_tree(snapshot_id)

    def read_file(self, snapshot_id: str, file_path: str) -> bytes:
        return self.backend().read_file(snapshot_id, file_path)

    def _restore_service(self, settings: AppSettings) -> RestoreService:
        return RestoreService(
            backend=self.backend(settings),
            live_dir=settings.live_config_path,
            pre_restore=lambda: self.backup_now(BackupKind.PRE_RESTORE, retention=False),
            credentials_configured=home_assistant_credentials_configured(settings),
        )

    def restore_file(
        self, snapshot_id: str, file_path: str, destination: str | None = None
    ) -> RestoreResult:
        return self._restore_service(self.settings()).restore_file(snapshot_id, file_path, destination)

    def list_items(self, snapshot_id: str, mode: str) -> list[dict]:
        return self._restore_service(self.settings()).list_items(snapshot_id, mode)

    def restore_item(self, snapshot_id: str, mode: str, identifier: str) -> RestoreResult:
        return self._restore_service(self.settings()).restore_item(snapshot_id, mode, identifier)

    def _history_backend(self, settings: AppSettings) -> VersionedHistoryBackend:
        if settings.backend_mode != BackendMode.HISTORY:
            raise InvalidInput("This operation requires the history backend")
        return VersionedHistoryBackend(self.backup_root(settings))

    def migrate(self) -> int:
        settings = self.settings()
        backend = self._history_backend(settings)
        with writer_lock(backend.root):
            backend.initialize()
            return backend.migrate_legacy_folders()

    def prune(self, keep: int) -> list[str]:
        backend = self.backend()
        with writer_lock(backend.root):
            return backend.apply_retention(keep)

    def stats(self) -> dict[str, Any]:
        settings = self.settings()
        if settings.backend_mode == BackendMode.HISTORY:
            return self._history_backend(settings).stats()

        snapshots = self.list_snapshots()
        return {
            "total_backups": len(snapshots),
            "newest": snapshots[0].id if snapshots else None,
            "oldest": snapshots[-1].id if snapshots else None,
        }
