import difflib
import shutil
from datetime import datetime
from pathlib import Path

from loguru import logger

from .backend import SnapshotBackend, build_file_tree
from .config import resolve_timezone
from .errors import (
    DestinationCreateFailed,
    FileNotFoundAtRevision,
    InvalidPath,
    NoParentRevision,
    SnapshotNotFound,
)
from .models import BackendMode, BackupKind, CommitResult, FileTreeNode, Snapshot, newest_first
from .paths import resolve_within_directory
from .retention import RetentionPolicy
from .scanner import PathScanner, snapshot_timestamp

PARTIAL_SUFFIX = ".partial"


def folder_name_for(now: datetime, tz_name: str | None = None) -> tuple[str, str, str]:
    """(year, month, YYYY-MM-DD-HHMMSS) in the given timezone, else local time."""
    tz = resolve_timezone(tz_name)
    local = now.astimezone(tz) if tz else now.astimezone()
    return local.strftime("%Y"), local.strftime("%m"), local.strftime("%Y-%m-%d-%H%M%S")


class FolderBackend(SnapshotBackend):
    mode = BackendMode.FOLDER

    def __init__(self, root: Path, scanner: PathScanner | None = None):
        super().__init__(root)
        self.scanner = scanner or PathScanner()

    def prepare(self, now: datetime, tz_name: str | None = None) -> Path:
        year, month, name = folder_name_for(now, tz_name)
        final_path = self.root / year / month / name
        staging = final_path.with_name(f".{name}{PARTIAL_SUFFIX}")

        logger.info(f"Creating directory: {final_path}")
        try:
            if staging.exists():
                shutil.rmtree(staging)
            staging.mkdir(parents=True)
        except OSError as e:
            logger.error(f"Failed to create directory {final_path}: {e}")
            raise DestinationCreateFailed(final_path, self.root)

        return staging

    def finalize(
        self,
        target: Path,
        kind: BackupKind,
        now: datetime,
        changed_file: str | None = None,
    ) -> tuple[CommitResult, Snapshot | None]:
        final_path = target.with_name(target.name[1 : -len(PARTIAL_SUFFIX)])

        if final_path.exists():
            # Two snapshots within the same second share a folder
            shutil.copytree(target, final_path, dirs_exist_ok=True)
            shutil.rmtree(target)
        else:
            target.rename(final_path)

        snapshot_id = final_path.relative_to(self.root).as_posix()
        snapshot = Snapshot(
            id=snapshot_id,
            created_at=snapshot_timestamp(final_path),
            # A folder name carries no kind, so report what a later listing reads back
            kind=BackupKind.UNKNOWN,
            label=final_path.name,
        )

        logger.info(f"Backup completed successfully at: {final_path}")
        return CommitResult(created=True, message=final_path.name, revision=snapshot_id), snapshot

    def discard(self, target: Path):
        shutil.rmtree(target, ignore_errors=True)

    def snapshot_path(self, snapshot_id: str) -> Path:
        candidate = Path(snapshot_id)
        if candidate.is_absolute():
            try:
                snapshot_id = candidate.resolve().relative_to(self.root.resolve()).as_posix()
            except ValueError:
                raise InvalidPath(str(candidate))

        path = resolve_within_directory(self.root, snapshot_id)
        if not path.is_dir():
            raise SnapshotNotFound(snapshot_id)
        return path

    def list_snapshots(self) -> list[Snapshot]:
        refs = self.scanner.scan(self.root)
        return newest_first(
            [
                Snapshot(
                    id=ref.path.relative_to(self.root).as_posix(),
                    created_at=ref.created_at,
                    kind=BackupKind.UNKNOWN,
                    label=ref.folder_name,
                )
                for ref in refs
            ]
        )

    def _previous_snapshot(self, snapshot_id: str) -> Snapshot | None:
        snapshots = self.list_snapshots()
        ids = [snapshot.id for snapshot in snapshots]
        try:
            position = ids.index(snapshot_id)
        except ValueError:
            raise SnapshotNotFound(snapshot_id)
        return snapshots[position + 1] if position + 1 < len(snapshots) else None

    def diff(self, snapshot_id: str, file_path: str | None = None) -> str:
        current_dir = self.snapshot_path(snapshot_id)
        snapshot_id = current_dir.relative_to(self.root).as_posix()

        previous = self._previous_snapshot(snapshot_id)
        if previous is None:
            raise NoParentRevision(snapshot_id)

        return diff_directories(self.root / previous.id, current_dir, file_path)

    def read_file(self, snapshot_id: str, file_path: str) -> bytes:
        snapshot_dir = self.snapshot_path(snapshot_id)
        path = resolve_within_directory(snapshot_dir, file_path)
        if not path.is_file():
            raise FileNotFoundAtRevision(snapshot_id, file_path)
        return path.read_bytes()

    def list_files(self, snapshot_id: str) -> list[str]:
        return list_tree_files(self.snapshot_path(snapshot_id))

    def file_tree(self, snapshot_id: str | None = None) -> list[FileTreeNode]:
        snapshots = self.list_snapshots()
        if not snapshots:
            return []

        target_id = snapshot_id or snapshots[0].id
        current = set(self.list_files(target_id))

        ever: set[str] = set()
        for snapshot in snapshots:
            ever.update(list_tree_files(self.root / snapshot.id))
        return build_file_tree(current, ever - current)

    def delete_snapshot(self, snapshot: Snapshot):
        path = self.root / snapshot.id
        logger.info(f"Deleting old backup: {path}")
        shutil.rmtree(path)

    def apply_retention(self, keep: int) -> list[str]:
        policy = RetentionPolicy(delete=self.delete_snapshot)
        return policy.prune(self.list_snapshots(), keep)


def list_tree_files(directory: Path) -> list[str]:
    """Files under a snapshot directory, skipping staging folders of unfinished snapshots."""
    files = []
    for path in directory.rglob("*"):
        if not path.is_file():
            continue
        relative = path.relative_to(directory)
        if any(part.endswith(PARTIAL_SUFFIX) for part in relative.parts):
            continue
        files.append(relative.as_posix())
    return sorted(files)


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        return []
    return path.read_bytes().decode("utf-8", errors="replace").splitlines(keepends=True)


def diff_directories(old_dir: Path, new_dir: Path, file_path: str | None = None) -> str:
    """Unified diff of same-named files in two snapshot directories."""
    if file_path:
        resolve_within_directory(new_dir, file_path)
        names = [Path(file_path).as_posix()]
    else:
        names = sorted(set(list_tree_files(old_dir)) | set(list_tree_files(new_dir)))

    chunks = []
    for name in names:
        old_path, new_path = old_dir / name, new_dir / name
        if old_path.is_file() and new_path.is_file() and old_path.read_bytes() == new_path.read_bytes():
            continue

        old_lines, new_lines = _read_lines(old_path), _read_lines(new_path)
        body = list(
            difflib.unified_diff(
                old_lines,
                new_lines,
                fromfile=f"a/{name}" if old_path.is_file() else "/dev/null",
                tofile=f"b/{name}" if new_path.is_file() else "/dev/null",
            )
        )
        if not body:
            continue

        chunks.append(f"diff --git a/{name} b/{name}\n")
        for line in body:
            chunks.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")

    return "".join(chunks)
