from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from .models import BackendMode, BackupKind, CommitResult, FileTreeNode, Snapshot


class SnapshotBackend(ABC):
    """Storage contract shared by the history and folder backends."""

    mode: BackendMode

    def __init__(self, root: Path):
        self.root = Path(root)

    @abstractmethod
    def prepare(self, now: datetime, tz_name: str | None = None) -> Path:
        """Return the directory the writer copies the file set into."""

    @abstractmethod
    def finalize(
        self,
        target: Path,
        kind: BackupKind,
        now: datetime,
        changed_file: str | None = None,
    ) -> tuple[CommitResult, Snapshot | None]:
        """Turn the copied file set into a snapshot."""

    def discard(self, target: Path):
        """Drop partial state left by a failed copy."""

    @abstractmethod
    def list_snapshots(self) -> list[Snapshot]:
        """All snapshots, newest first."""

    @abstractmethod
    def diff(self, snapshot_id: str, file_path: str | None = None) -> str:
        pass

    @abstractmethod
    def read_file(self, snapshot_id: str, file_path: str) -> bytes:
        pass

    @abstractmethod
    def list_files(self, snapshot_id: str) -> list[str]:
        pass

    @abstractmethod
    def file_tree(self, snapshot_id: str | None = None) -> list[FileTreeNode]:
        pass

    @abstractmethod
    def apply_retention(self, keep: int) -> list[str]:
        """Delete snapshots beyond the newest `keep`; returns deleted ids."""


def build_file_tree(current_files: set[str] | list[str], deleted_files: set[str] | list[str] = ()) -> list[FileTreeNode]:
    """Nest slash-separated paths into a tree, directories first then by name."""
    root = FileTreeNode(name="", path="", is_dir=True)
    index: dict[str, FileTreeNode] = {"": root}

    def insert(file_path: str, deleted: bool):
        parts = file_path.split("/")
        parent = root
        for depth, part in enumerate(parts[:-1]):
            dir_path = "/".join(parts[: depth + 1])
            node = index.get(dir_path)
            if node is None:
                node = FileTreeNode(name=part, path=dir_path, is_dir=True, deleted=deleted)
                index[dir_path] = node
                parent.children.append(node)
            elif not deleted:
                node.deleted = False
            parent = node

        if file_path not in index:
            leaf = FileTreeNode(name=parts[-1], path=file_path, is_dir=False, deleted=deleted)
            index[file_path] = leaf
            parent.children.append(leaf)

    for file_path in sorted(current_files):
        insert(file_path, deleted=False)
    for file_path in sorted(set(deleted_files) - set(current_files)):
        insert(file_path, deleted=True)

    def sort_children(node: FileTreeNode):
        node.children.sort(key=lambda child: (not child.is_dir, child.name.lower(), child.name))
        for child in node.children:
            sort_children(child)

    sort_children(root)
    return root.children
