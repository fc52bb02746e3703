import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from .errors import BackupRootNotFound
from .paths import is_yaml_file

DASHED_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}-\d{6}$")
NUMERIC_PATTERN = re.compile(r"^\d{12}$")

# Export folders that live next to snapshots but are never snapshots themselves
SKIP_BACKUP_DIRS = frozenset({"esphome", ".storage", "packages"})
CORE_FILE_NAMES = frozenset({"automations.yaml", "scripts.yaml"})


@dataclass
class SnapshotRef:
    path: Path
    folder_name: str

    @property
    def created_at(self) -> datetime:
        return snapshot_timestamp(self.path)


def matches_snapshot_name(name: str) -> bool:
    return bool(DASHED_PATTERN.match(name) or NUMERIC_PATTERN.match(name))


def snapshot_timestamp(path: Path) -> datetime:
    """Wall-clock time encoded in a snapshot folder name, else its mtime."""
    name = path.name
    try:
        if DASHED_PATTERN.match(name):
            return datetime.strptime(name, "%Y-%m-%d-%H%M%S").replace(tzinfo=timezone.utc)
        if NUMERIC_PATTERN.match(name):
            return datetime.strptime(name, "%Y%m%d%H%M").replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return datetime.fromtimestamp(0, tz=timezone.utc)


class PathScanner:
    def __init__(self, skip_dirs: frozenset[str] = SKIP_BACKUP_DIRS):
        self.skip_dirs = skip_dirs

    def scan(self, root_dir: Path) -> list[SnapshotRef]:
        root_dir = Path(root_dir)
        if not root_dir.is_dir():
            raise BackupRootNotFound(root_dir)

        logger.debug(f"Scanning backup directory: {root_dir}")
        results = self._walk(root_dir)
        return [ref for ref in results if ref.path.name not in self.skip_dirs]

    def is_snapshot_dir(self, path: Path) -> bool:
        if matches_snapshot_name(path.name):
            return True

        # Fallback: a folder holding config files is treated as a snapshot
        try:
            for child in path.iterdir():
                if child.name in CORE_FILE_NAMES:
                    return True
                if child.is_file() and is_yaml_file(child):
                    return True
        except OSError as e:
            logger.warning(f"Cannot read {path}: {e}")
        return False

    def _walk(self, directory: Path) -> list[SnapshotRef]:
        results: list[SnapshotRef] = []

        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            logger.warning(f"Skipping unreadable directory {directory}: {e}")
            return results

        for entry in entries:
            if entry.name.startswith(".") or entry.name in self.skip_dirs:
                continue
            if entry.is_symlink() or not entry.is_dir():
                continue

            if self.is_snapshot_dir(entry):
                results.append(SnapshotRef(path=entry, folder_name=entry.name))

            # Keep descending to support nested year/month grouping
            results.extend(self._walk(entry))

        return results


def has_backups_recursive(directory: Path, depth: int = 0, max_depth: int = 5) -> bool:
    if depth > max_depth:
        return False

    try:
        entries = list(directory.iterdir())
    except OSError:
        return False

    if any(entry.is_file() and is_yaml_file(entry) for entry in entries):
        return True
    if any(entry.is_dir() and matches_snapshot_name(entry.name) for entry in entries):
        return True

    return any(
        has_backups_recursive(entry, depth + 1, max_depth) for entry in entries if entry.is_dir()
    )


def validate_backup_root(path: Path) -> bool:
    """True when path is a directory holding snapshots or YAML within five levels."""
    path = Path(path)
    if not path.exists():
        raise BackupRootNotFound(path)
    if not path.is_dir():
        return False
    return has_backups_recursive(path)
