import os
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from .backend import SnapshotBackend
from .errors import (
    BackupRootNotFound,
    DestinationCreateFailed,
    DestinationUnwritable,
    InvalidInput,
    InvalidPath,
)
from .folder_backend import FolderBackend
from .history_backend import VersionedHistoryBackend
from .models import BackendMode, BackupKind, BackupResult, FeatureFlags
from .paths import is_yaml_file, list_yaml_files_recursive

LOVELACE_DIR = ".storage"
LOVELACE_PREFIX = "lovelace"
DEVICE_DEFINITIONS_DIR = "esphome"
USER_PACKAGES_DIR = "packages"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Capabilities:
    """Optional subtrees included in a snapshot, fixed for its whole duration."""

    recursive_subtrees: tuple[str, ...] = ()

    @classmethod
    def from_flags(cls, features: FeatureFlags) -> "Capabilities":
        subtrees = []
        if features.device_definitions:
            subtrees.append(DEVICE_DEFINITIONS_DIR)
        if features.user_packages:
            subtrees.append(USER_PACKAGES_DIR)
        return cls(recursive_subtrees=tuple(subtrees))


_locks_guard = threading.Lock()
_root_locks: dict[str, threading.Lock] = {}


def writer_lock(root: Path) -> threading.Lock:
    """Single-writer lock for one backup root."""
    key = os.path.normcase(os.path.abspath(root))
    with _locks_guard:
        lock = _root_locks.get(key)
        if lock is None:
            lock = _root_locks[key] = threading.Lock()
        return lock


def open_backend(mode: BackendMode | str, root: Path) -> SnapshotBackend:
    mode = BackendMode.parse(mode)
    if mode == BackendMode.HISTORY:
        return VersionedHistoryBackend(Path(root))
    return FolderBackend(Path(root))


def ensure_destination(dest_root: Path) -> Path:
    dest_root = Path(dest_root)
    if dest_root.exists():
        if not dest_root.is_dir() or not os.access(dest_root, os.R_OK | os.W_OK):
            logger.error(f"Destination is not writable: {dest_root}")
            raise DestinationUnwritable(dest_root)
        return dest_root

    logger.info(f"Creating backup destination: {dest_root}")
    try:
        dest_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create destination {dest_root}: {e}")
        raise DestinationCreateFailed(dest_root, dest_root.parent)
    return dest_root


def copy_file(source: Path, destination: Path):
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)


class SnapshotWriter:
    def __init__(
        self,
        mode: BackendMode | str = BackendMode.FOLDER,
        features: FeatureFlags | None = None,
        clock: Clock = utc_now,
        backend_factory: Callable[[BackendMode, Path], SnapshotBackend] = open_backend,
    ):
        self.mode = BackendMode.parse(mode)
        self.features = features or FeatureFlags()
        self.clock = clock
        self.backend_factory = backend_factory

    def plan(self, source_dir: Path, capabilities: Capabilities) -> list[str]:
        """Relative paths to copy, in copy order."""
        files: list[str] = []

        for entry in sorted(source_dir.iterdir(), key=lambda p: p.name):
            if entry.is_file() and is_yaml_file(entry):
                files.append(entry.name)

        lovelace_dir = source_dir / LOVELACE_DIR
        if lovelace_dir.is_dir():
            for entry in sorted(lovelace_dir.iterdir(), key=lambda p: p.name):
                if entry.is_file() and entry.name.startswith(LOVELACE_PREFIX):
                    files.append(f"{LOVELACE_DIR}/{entry.name}")
        else:
            logger.debug(f"No {LOVELACE_DIR} directory in {source_dir}, skipping dashboards")

        for subtree in capabilities.recursive_subtrees:
            for relative in list_yaml_files_recursive(source_dir / subtree):
                files.append(f"{subtree}/{relative}")

        return files

    def _copy_all(self, source_dir: Path, target: Path, files: list[str], result: BackupResult):
        for relative in files:
            try:
                copy_file(source_dir / relative, target / relative)
                result.copied_files.append(relative)
            except OSError as e:
                logger.warning(f"Failed to copy {relative}: {e}")
                result.failed_files.append(relative)

    def _apply_retention(self, backend: SnapshotBackend, count: int, result: BackupResult):
        if count <= 0:
            return
        try:
            result.pruned = backend.apply_retention(count)
        except Exception as e:
            logger.warning(f"Retention failed for {backend.root}: {e}")

    def write(
        self,
        source_dir: Path,
        dest_root: Path,
        trigger: BackupKind = BackupKind.MANUAL,
        timezone: str | None = None,
        retention_enabled: bool = False,
        retention_count: int = 0,
    ) -> BackupResult:
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise BackupRootNotFound(source_dir)

        dest_root = ensure_destination(dest_root)
        capabilities = Capabilities.from_flags(self.features)
        backend = self.backend_factory(self.mode, dest_root)

        with writer_lock(dest_root):
            now = self.clock()
            logger.info(f"Starting {trigger.value} backup of {source_dir} into {dest_root} ({self.mode.value})")

            target = backend.prepare(now, timezone)
            result = BackupResult(location=target, created=False)
            try:
                self._copy_all(source_dir, target, self.plan(source_dir, capabilities), result)
                commit, snapshot = backend.finalize(target, trigger, now)
            except Exception:
                backend.discard(target)
                raise

            result.created = commit.created
            result.message = commit.message
            result.snapshot = snapshot
            if snapshot is not None and self.mode == BackendMode.FOLDER:
                result.location = dest_root / snapshot.id

            if result.failed_files:
                logger.warning(f"{len(result.failed_files)} files could not be copied")

            if commit.created and retention_enabled:
                self._apply_retention(backend, retention_count, result)

        return result

    def autosave(
        self,
        source_dir: Path,
        dest_root: Path,
        changed_path: Path,
        retention_enabled: bool = False,
        retention_count: int = 0,
    ) -> BackupResult:
        """Copy one changed file into the history store and commit it."""
        if self.mode != BackendMode.HISTORY:
            raise InvalidInput("Autosave requires the history backend")

        source_dir = Path(source_dir).resolve()
        changed_path = Path(changed_path).resolve()
        try:
            relative = changed_path.relative_to(source_dir).as_posix()
        except ValueError:
            raise InvalidPath(str(changed_path))

        dest_root = ensure_destination(dest_root)
        backend = self.backend_factory(self.mode, dest_root)

        with writer_lock(dest_root):
            now = self.clock()
            target = backend.prepare(now)
            result = BackupResult(location=target, created=False)

            if changed_path.is_file():
                self._copy_all(source_dir, target, [relative], result)
            else:
                logger.warning(f"Changed file no longer exists: {changed_path}")

            commit, snapshot = backend.finalize(target, BackupKind.AUTOSAVE, now, changed_file=relative)
            result.created = commit.created
            result.message = commit.message
            result.snapshot = snapshot

            if commit.created and retention_enabled:
                self._apply_retention(backend, retention_count, result)

        return result
