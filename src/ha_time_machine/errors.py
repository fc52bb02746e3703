from pathlib import Path


class TimeMachineError(Exception):
    exit_code = 1


class NotFoundError(TimeMachineError):
    exit_code = 2


class BackupRootNotFound(NotFoundError):
    def __init__(self, path: Path | str):
        self.path = str(path)
        super().__init__(f"Backup directory not found: {self.path}")


class SnapshotNotFound(NotFoundError):
    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class RevisionNotFound(NotFoundError):
    def __init__(self, revision: str):
        self.revision = revision
        super().__init__(f"Revision not found: {revision}")


class FileNotFoundAtRevision(NotFoundError):
    def __init__(self, revision: str, file_path: str):
        self.revision = revision
        self.file_path = file_path
        super().__init__(f"File {file_path} does not exist at {revision}")


class NoParentRevision(NotFoundError):
    exit_code = 7

    def __init__(self, revision: str):
        self.revision = revision
        super().__init__(f"Revision {revision} has no parent to diff against")


class DestinationUnwritable(TimeMachineError):
    exit_code = 3

    def __init__(self, path: Path | str):
        self.path = str(path)
        super().__init__(f"Backup directory is not readable and writable: {self.path}")


class DestinationCreateFailed(TimeMachineError):
    exit_code = 4

    def __init__(self, path: Path | str, parent: Path | str | None = None):
        self.path = str(path)
        self.parent = str(parent) if parent is not None else str(Path(path).parent)
        super().__init__(f"Could not create backup directory {self.path} (parent: {self.parent})")


class InvalidInput(TimeMachineError):
    exit_code = 5


class InvalidSchedule(InvalidInput):
    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid schedule {expression!r}: {reason}")


class InvalidPath(InvalidInput):
    def __init__(self, path: str | None):
        self.path = path
        super().__init__(f"Invalid path: {path!r}")


class ItemNotFound(InvalidInput):
    def __init__(self, identifier: str, file_name: str):
        self.identifier = identifier
        self.file_name = file_name
        super().__init__(f"No item with id or alias {identifier!r} in {file_name}")


class BackendUninitialized(TimeMachineError):
    exit_code = 6

    def __init__(self, path: Path | str):
        self.path = str(path)
        super().__init__(f"History store at {self.path} is not initialized")
