import pytest

from ha_time_machine.errors import (
    FileNotFoundAtRevision,
    InvalidPath,
    NoParentRevision,
    SnapshotNotFound,
)
from ha_time_machine.folder_backend import FolderBackend, folder_name_for, list_tree_files
from ha_time_machine.models import BackendMode, BackupKind, FeatureFlags
from ha_time_machine.scanner import PathScanner
from ha_time_machine.writer import SnapshotWriter

from .conftest import FIXED_NOW


def _writer(clock, features=None):
    return SnapshotWriter(BackendMode.FOLDER, features=features, clock=clock)


def _find(nodes, name):
    return next(node for node in nodes if node.name == name)


def test_write_then_prune_everything(live_dir, backup_root, clock):
    result = _writer(clock).write(live_dir, backup_root, BackupKind.SCHEDULED, timezone="UTC")

    expected = backup_root / "2025" / "06" / "2025-06-02-153045"
    assert result.created
    assert result.location == expected
    assert result.snapshot.id == "2025/06/2025-06-02-153045"
    assert (expected / "automations.yaml").read_bytes() == (live_dir / "automations.yaml").read_bytes()

    backend = FolderBackend(backup_root)
    assert [s.id for s in backend.list_snapshots()] == [result.snapshot.id]

    assert backend.apply_retention(0) == [result.snapshot.id]
    assert not expected.exists()
    assert PathScanner().scan(backup_root) == []


def test_copies_core_files_and_dashboards_only_by_default(live_dir, backup_root, clock):
    result = _writer(clock).write(live_dir, backup_root, timezone="UTC")

    assert result.copied_files == [
        "automations.yaml",
        "configuration.yaml",
        "scripts.yaml",
        ".storage/lovelace",
        ".storage/lovelace_dashboards",
    ]
    assert not (result.location / "home-assistant.log").exists()
    assert not (result.location / ".storage" / "core.config_entries").exists()
    assert not (result.location / "esphome").exists()


def test_feature_flags_add_subtrees(live_dir, backup_root, clock):
    features = FeatureFlags(device_definitions=True, user_packages=True)

    result = _writer(clock, features).write(live_dir, backup_root, timezone="UTC")

    assert result.copied_files[-3:] == [
        "esphome/devices/porch.yaml",
        "esphome/kitchen.yaml",
        "packages/lights.yaml",
    ]
    assert (result.location / "esphome" / "devices" / "porch.yaml").is_file()


def test_folder_name_uses_requested_timezone():
    assert folder_name_for(FIXED_NOW, "UTC") == ("2025", "06", "2025-06-02-153045")
    assert folder_name_for(FIXED_NOW, "America/New_York") == ("2025", "06", "2025-06-02-113045")


def test_no_partial_directory_left_behind(live_dir, backup_root, clock):
    _writer(clock).write(live_dir, backup_root, timezone="UTC")

    assert not [p for p in backup_root.rglob("*") if p.name.endswith(".partial")]


def test_failed_snapshot_discards_staging(live_dir, backup_root, clock, monkeypatch):
    def broken_finalize(self, target, kind, now, changed_file=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr(FolderBackend, "finalize", broken_finalize)

    with pytest.raises(RuntimeError):
        _writer(clock).write(live_dir, backup_root, timezone="UTC")

    assert list((backup_root / "2025" / "06").iterdir()) == []


def test_same_second_writes_share_a_folder(live_dir, backup_root, clock):
    writer = _writer(clock)
    writer.write(live_dir, backup_root, timezone="UTC")
    writer.write(live_dir, backup_root, timezone="UTC")

    assert len(FolderBackend(backup_root).list_snapshots()) == 1


def test_diff_against_previous_snapshot(live_dir, backup_root, clock):
    writer = _writer(clock)
    first = writer.write(live_dir, backup_root, timezone="UTC").snapshot

    (live_dir / "automations.yaml").write_text(
        (live_dir / "automations.yaml").read_text().replace("alias: Test", "alias: Renamed")
    )
    clock.advance(hours=1)
    second = writer.write(live_dir, backup_root, timezone="UTC").snapshot

    backend = FolderBackend(backup_root)
    assert [s.id for s in backend.list_snapshots()] == [second.id, first.id]

    output = backend.diff(second.id)
    assert "--- a/automations.yaml" in output
    assert "-  alias: Test" in output
    assert "+  alias: Renamed" in output
    assert "configuration.yaml" not in output

    assert backend.diff(second.id, "configuration.yaml") == ""

    with pytest.raises(NoParentRevision):
        backend.diff(first.id)


def test_read_and_list_files(live_dir, backup_root, clock):
    snapshot = _writer(clock).write(live_dir, backup_root, timezone="UTC").snapshot
    backend = FolderBackend(backup_root)

    assert backend.read_file(snapshot.id, "scripts.yaml") == (live_dir / "scripts.yaml").read_bytes()
    assert ".storage/lovelace" in backend.list_files(snapshot.id)

    with pytest.raises(FileNotFoundAtRevision):
        backend.read_file(snapshot.id, "missing.yaml")
    with pytest.raises(InvalidPath):
        backend.read_file(snapshot.id, "../../../etc/passwd")
    with pytest.raises(SnapshotNotFound):
        backend.list_files("2020/01/2020-01-01-000000")


def test_file_tree_marks_files_missing_from_newest(live_dir, backup_root, clock):
    _writer(clock, FeatureFlags(user_packages=True)).write(live_dir, backup_root, timezone="UTC")
    clock.advance(minutes=5)
    _writer(clock).write(live_dir, backup_root, timezone="UTC")

    nodes = FolderBackend(backup_root).file_tree()

    assert [node.name for node in nodes][:2] == [".storage", "packages"]
    packages = _find(nodes, "packages")
    assert packages.deleted
    assert _find(packages.children, "lights.yaml").deleted
    assert not _find(nodes, "automations.yaml").deleted


def test_retention_after_write(live_dir, backup_root, clock):
    writer = _writer(clock)
    results = []
    for _ in range(3):
        results.append(
            writer.write(live_dir, backup_root, timezone="UTC", retention_enabled=True, retention_count=2)
        )
        clock.advance(days=1)

    assert results[-1].pruned == [results[0].snapshot.id]
    assert len(FolderBackend(backup_root).list_snapshots()) == 2


def test_tree_files_skip_staging_folders(tmp_path):
    snapshot = tmp_path / "2025-06-02-153045"
    (snapshot / "packages" / "lights").mkdir(parents=True)
    (snapshot / "packages" / "lights" / "kitchen.yaml").write_text("{}\n")
    (snapshot / ".2025-06-02-153046.partial").mkdir()
    (snapshot / ".2025-06-02-153046.partial" / "automations.yaml").write_text("[]\n")
    (snapshot / "automations.yaml").write_text("[]\n")

    assert list_tree_files(snapshot) == ["automations.yaml", "packages/lights/kitchen.yaml"]
