from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class BackendMode(str, Enum):
    HISTORY = "history"
    FOLDER = "folder"

    @classmethod
    def parse(cls, value: "str | BackendMode | None") -> "BackendMode":
        if isinstance(value, BackendMode):
            return value
        # the add-on stored the history mode as "git"
        if value in ("git", "history"):
            return cls.HISTORY
        return cls.FOLDER


class BackupKind(str, Enum):
    SCHEDULED = "scheduled"
    AUTOSAVE = "autosave"
    PRE_RESTORE = "pre-restore"
    MANUAL = "manual"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FeatureFlags:
    device_definitions: bool = False
    user_packages: bool = False


@dataclass
class WatchEvent:
    path: Path
    event_type: str  # created, modified
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CommitResult:
    created: bool
    message: str
    revision: str | None = None
    tag: str | None = None


@dataclass
class FileTreeNode:
    name: str
    path: str
    is_dir: bool
    deleted: bool = False
    children: list["FileTreeNode"] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"name": self.name, "path": self.path, "type": "dir" if self.is_dir else "file"}
        if self.deleted:
            data["deleted"] = True
        if self.is_dir:
            data["children"] = [child.to_dict() for child in self.children]
        return data


class Snapshot(BaseModel):
    id: str
    created_at: datetime
    kind: BackupKind = BackupKind.UNKNOWN
    label: str = ""
    tags: list[str] = Field(default_factory=list)

    def sort_key(self) -> tuple[datetime, str]:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created, self.id


def newest_first(snapshots: list[Snapshot]) -> list[Snapshot]:
    """Order by creation time, ties broken by id, newest first."""
    return sorted(snapshots, key=lambda snap: snap.sort_key(), reverse=True)


@dataclass
class BackupResult:
    location: Path
    created: bool
    snapshot: Snapshot | None = None
    message: str = ""
    copied_files: list[str] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    target: Path
    reload_service: str | None
    credentials_configured: bool
    pre_restore: BackupResult | None = None


class ScheduleJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    cron_expression: str = Field(
        alias="cronExpression",
        validation_alias=AliasChoices("cronExpression", "cron_expression"),
    )
    timezone: str | None = None
    enabled: bool = True
    source_path: str | None = Field(
        default=None,
        alias="sourcePath",
        validation_alias=AliasChoices("sourcePath", "liveConfigPath", "source_path"),
    )
    destination_path: str | None = Field(
        default=None,
        alias="destinationPath",
        validation_alias=AliasChoices("destinationPath", "backupFolderPath", "destination_path"),
    )
    retention_enabled: bool = Field(
        default=False,
        alias="retentionEnabled",
        validation_alias=AliasChoices("retentionEnabled", "maxBackupsEnabled", "retention_enabled"),
    )
    retention_count: int = Field(
        default=100,
        alias="retentionCount",
        validation_alias=AliasChoices("retentionCount", "maxBackupsCount", "retention_count"),
    )

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)
