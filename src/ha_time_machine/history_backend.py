import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from .backend import SnapshotBackend, build_file_tree
from .errors import (
    BackendUninitialized,
    DestinationCreateFailed,
    FileNotFoundAtRevision,
    NoParentRevision,
    RevisionNotFound,
)
from .git_wrapper import GitError, GitWrapper
from .models import BackendMode, BackupKind, CommitResult, FileTreeNode, Snapshot
from .paths import normalize_relative_path
from .retention import RetentionPolicy

INITIAL_COMMIT_MESSAGE = "Initial commit: Git-based backup initialized"
MIGRATION_COMMIT_MESSAGE = "Migrate legacy folder backups out of Git history"

GITIGNORE_LINES = [
    "# Home Assistant logs and databases",
    "home-assistant.log",
    "*.log",
    "*.db",
    "*.db-journal",
    "*.db-shm",
    "*.db-wal",
    "__pycache__/",
    "*.pyc",
    "*.pyo",
    "",
    "# Temporary files",
    ".DS_Store",
    "Thumbs.db",
    "",
    "# Secrets (additional protection)",
    "secrets.yaml",
    ".HA_VERSION",
    ".uuid",
    ".cloud",
    ".storage/auth*",
    "",
]

LEGACY_IGNORE_HEADER = "# Legacy folder-mode backups (kept on disk, not tracked)"
LEGACY_IGNORE_LINES = [
    "/[0-9][0-9][0-9][0-9]/",
    "/[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]-[0-9][0-9][0-9][0-9][0-9][0-9]/",
    "/" + "[0-9]" * 12 + "/",
]
LEGACY_NAME_PATTERN = re.compile(r"^(\d{4}|\d{4}-\d{2}-\d{2}-\d{6}|\d{12})$")

TAG_PREFIXES: dict[BackupKind, str] = {
    BackupKind.SCHEDULED: "backup-scheduled-",
    BackupKind.AUTOSAVE: "autosave-",
    BackupKind.PRE_RESTORE: "pre-restore-",
    BackupKind.MANUAL: "backup-manual-",
}

MESSAGE_PREFIXES: dict[BackupKind, str] = {
    BackupKind.SCHEDULED: "Scheduled Backup:",
    BackupKind.AUTOSAVE: "Auto-save:",
    BackupKind.PRE_RESTORE: "Pre-restore Backup:",
    BackupKind.MANUAL: "Manual Backup:",
}

MIGRATION_BATCH_SIZE = 100


def classify_kind(tags: list[str], message: str) -> BackupKind:
    for tag in tags:
        for kind, prefix in TAG_PREFIXES.items():
            if tag.startswith(prefix):
                return kind
    for kind, prefix in MESSAGE_PREFIXES.items():
        if message.startswith(prefix):
            return kind
    return BackupKind.UNKNOWN


def commit_message(kind: BackupKind, now: datetime, changed_file: str | None = None) -> str:
    timestamp = now.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    if kind == BackupKind.AUTOSAVE and changed_file:
        return f"Auto-save: {Path(changed_file).name} modified at {timestamp}"
    if kind in MESSAGE_PREFIXES:
        return f"{MESSAGE_PREFIXES[kind]} {timestamp}"
    return f"Backup: {timestamp}"


def tag_name(kind: BackupKind, now: datetime) -> str:
    compact = now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{TAG_PREFIXES.get(kind, TAG_PREFIXES[BackupKind.AUTOSAVE])}{compact}"


class VersionedHistoryBackend(SnapshotBackend):
    mode = BackendMode.HISTORY

    def __init__(self, root: Path, git: GitWrapper | None = None):
        super().__init__(root)
        self.git = git or GitWrapper(self.root)

    @property
    def initialized(self) -> bool:
        return self.git.is_repo()

    def initialize(self) -> bool:
        """Create the store on first use. Returns False when it already existed."""
        if self.git.is_repo():
            logger.debug(f"Repository already initialized at {self.root}")
            return False

        logger.info(f"Initializing new git repository at {self.root}")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create backup root {self.root}: {e}")
            raise DestinationCreateFailed(self.root, self.root.parent)

        self.git.init()
        (self.root / ".gitignore").write_text("\n".join(GITIGNORE_LINES))
        self.git.add([".gitignore"])
        self.git.commit(INITIAL_COMMIT_MESSAGE)

        logger.info("Repository initialized successfully")
        return True

    def _require_initialized(self):
        if not self.git.is_repo():
            raise BackendUninitialized(self.root)

    def _require_revision(self, revision: str) -> str:
        self._require_initialized()
        if not revision or not self.git.rev_exists(revision):
            raise RevisionNotFound(revision)
        return revision

    def commit(
        self, kind: BackupKind, now: datetime | None = None, changed_file: str | None = None
    ) -> CommitResult:
        self._require_initialized()
        now = now or datetime.now(timezone.utc)

        if not self.git.status():
            logger.info("No changes detected, skipping backup")
            return CommitResult(created=False, message="No changes to backup")

        self.git.add()
        if not self.git.has_staged_changes():
            logger.info("Only ignored files changed, skipping backup")
            return CommitResult(created=False, message="No changes to backup")

        message = commit_message(kind, now, changed_file)
        revision = self.git.commit(message)

        tag = tag_name(kind, now)
        suffix = 1
        while self.git.tag_exists(tag):
            tag = f"{tag_name(kind, now)}-{suffix}"
            suffix += 1
        self.git.add_tag(tag, revision)

        logger.info(f"Backup created: {revision[:12]} ({tag})")
        return CommitResult(created=True, message=message, revision=revision, tag=tag)

    def prepare(self, now: datetime, tz_name: str | None = None) -> Path:
        self.initialize()
        return self.root

    def finalize(
        self,
        target: Path,
        kind: BackupKind,
        now: datetime,
        changed_file: str | None = None,
    ) -> tuple[CommitResult, Snapshot | None]:
        result = self.commit(kind, now=now, changed_file=changed_file)
        if not result.created:
            return result, None

        snapshot = Snapshot(
            id=result.revision,
            created_at=now,
            kind=kind,
            label=result.message,
            tags=[result.tag] if result.tag else [],
        )
        return result, snapshot

    def list_snapshots(self) -> list[Snapshot]:
        self._require_initialized()
        return [
            Snapshot(
                id=commit["hash"],
                created_at=commit["date"],
                kind=classify_kind(commit["tags"], commit["message"]),
                label=commit["message"],
                tags=commit["tags"],
            )
            for commit in self.git.log()
        ]

    def diff(self, snapshot_id: str, file_path: str | None = None) -> str:
        revision = self._require_revision(snapshot_id)
        if not self.git.has_parent(revision):
            raise NoParentRevision(revision)

        path = normalize_relative_path(file_path) if file_path else None
        logger.debug(f"Diffing {revision} against its parent, file: {path or 'all'}")
        return self.git.diff(f"{revision}^", revision, path)

    def read_file(self, snapshot_id: str, file_path: str) -> bytes:
        revision = self._require_revision(snapshot_id)
        path = normalize_relative_path(file_path)
        if not self.git.file_exists_at(revision, path):
            raise FileNotFoundAtRevision(revision, path)
        return self.git.show_file(revision, path)

    def list_files(self, snapshot_id: str) -> list[str]:
        revision = self._require_revision(snapshot_id)
        return self.git.ls_tree(revision)

    def file_tree(self, snapshot_id: str | None = None) -> list[FileTreeNode]:
        self._require_initialized()
        revision = snapshot_id or "HEAD"
        if not self.git.has_commits():
            return []
        self._require_revision(revision)

        current = set(self.git.ls_tree(revision))
        ever = self.git.files_ever_added(revision)
        return build_file_tree(current, ever - current)

    def tagged_snapshots(self) -> list[Snapshot]:
        """Backup tags as a retention set; ids are tag names."""
        self._require_initialized()
        snapshots = []
        for tag in self.git.list_tags():
            kind = classify_kind([tag["name"]], "")
            if kind == BackupKind.UNKNOWN:
                continue
            snapshots.append(
                Snapshot(
                    id=tag["name"],
                    created_at=tag["date"],
                    kind=kind,
                    label=tag["name"],
                    tags=[tag["name"]],
                )
            )
        return snapshots

    def apply_retention(self, keep: int) -> list[str]:
        policy = RetentionPolicy(delete=lambda snapshot: self.git.delete_tag(snapshot.id))
        deleted = policy.prune(self.tagged_snapshots(), keep)

        if deleted:
            try:
                self.git.gc()
            except GitError as e:
                logger.warning(f"Garbage collection failed: {e}")

            logger.info(f"Cleaned up {len(deleted)} old backup tags")
        return deleted

    def migrate_legacy_folders(self, batch_size: int = MIGRATION_BATCH_SIZE) -> int:
        """Untrack top-level folder-mode snapshots; files stay on disk."""
        self._require_initialized()

        top_level = sorted({path.split("/", 1)[0] for path in self.git.ls_files() if "/" in path})
        legacy = [name for name in top_level if LEGACY_NAME_PATTERN.match(name)]

        if not legacy:
            logger.info("No legacy folder backups tracked, nothing to migrate")
            return 0

        logger.info(f"Untracking {len(legacy)} legacy folder backups")
        for start in range(0, len(legacy), batch_size):
            self.git.rm_cached(legacy[start : start + batch_size])

        self._ensure_legacy_ignore_rules()
        self.git.add([".gitignore"])

        if self.git.has_staged_changes():
            self.git.commit(MIGRATION_COMMIT_MESSAGE)
        return len(legacy)

    def _ensure_legacy_ignore_rules(self):
        gitignore = self.root / ".gitignore"
        existing = gitignore.read_text() if gitignore.exists() else ""
        missing = [line for line in LEGACY_IGNORE_LINES if line not in existing.splitlines()]
        if not missing:
            return

        content = existing
        if content and not content.endswith("\n"):
            content += "\n"
        content += "\n".join([LEGACY_IGNORE_HEADER] + missing) + "\n"
        gitignore.write_text(content)

    def stats(self) -> dict[str, Any]:
        self._require_initialized()
        snapshots = self.list_snapshots()
        status = self.git.status()
        return {
            "total_commits": len(snapshots),
            "total_tags": len(self.git.list_tags()),
            "scheduled_backups": sum(1 for s in snapshots if s.kind == BackupKind.SCHEDULED),
            "autosave_backups": sum(1 for s in snapshots if s.kind == BackupKind.AUTOSAVE),
            "pre_restore_backups": sum(1 for s in snapshots if s.kind == BackupKind.PRE_RESTORE),
            "uncommitted_changes": bool(status),
            "modified_files": sum(1 for line in status if not line.startswith("??")),
            "untracked_files": sum(1 for line in status if line.startswith("??")),
        }
