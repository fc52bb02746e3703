import pytest

from ha_time_machine.backup_manager import BackupManager
from ha_time_machine.config import AppSettings
from ha_time_machine.errors import BackupRootNotFound, InvalidInput, InvalidPath
from ha_time_machine.models import BackendMode, BackupKind, ScheduleJob, WatchEvent


@pytest.fixture
def settings(live_dir, backup_root):
    return AppSettings(live_config_path=live_dir, backup_root=backup_root)


@pytest.fixture
def manager(settings, clock):
    return BackupManager(settings_loader=lambda: settings, clock=clock)


def test_settings_reread_per_operation(live_dir, backup_root, clock):
    calls = []

    def loader():
        calls.append(1)
        return AppSettings(live_config_path=live_dir, backup_root=backup_root)

    manager = BackupManager(settings_loader=loader, clock=clock)
    manager.backup_now(timezone="UTC")
    manager.list_snapshots()

    assert len(calls) >= 2


def test_backup_and_browse_in_folder_mode(manager, live_dir):
    result = manager.backup_now(timezone="UTC")

    snapshots = manager.list_snapshots()
    assert [s.id for s in snapshots] == [result.snapshot.id]
    assert manager.read_file(result.snapshot.id, "automations.yaml") == (live_dir / "automations.yaml").read_bytes()
    assert "scripts.yaml" in manager.list_files(result.snapshot.id)
    assert [ref.folder_name for ref in manager.scan()] == ["2025-06-02-153045"]
    assert manager.stats()["total_backups"] == 1


def test_restore_takes_pre_restore_snapshot(manager, live_dir, clock, monkeypatch):
    monkeypatch.delenv("SUPERVISOR_TOKEN", raising=False)
    monkeypatch.delenv("HASSIO_TOKEN", raising=False)
    snapshot = manager.backup_now(timezone="UTC").snapshot
    (live_dir / "automations.yaml").write_text("[]\n")
    clock.advance(minutes=1)

    result = manager.restore_file(snapshot.id, "automations.yaml")

    assert result.pre_restore.created
    assert len(manager.list_snapshots()) == 2
    assert manager.list_snapshots()[0].id == result.pre_restore.snapshot.id
    assert result.pre_restore.snapshot.kind == BackupKind.UNKNOWN
    assert result.credentials_configured is False


def test_scheduled_job_uses_job_paths(manager, live_dir, tmp_path):
    job = ScheduleJob(
        id="nightly",
        cron_expression="0 2 * * *",
        timezone="UTC",
        source_path=str(live_dir),
        destination_path=str(tmp_path / "elsewhere"),
    )

    result = manager.run_scheduled_job(job)

    assert result.location == tmp_path / "elsewhere" / "2025" / "06" / "2025-06-02-153045"
    assert result.snapshot.kind == BackupKind.UNKNOWN


def test_prune_and_missing_root(manager, clock):
    manager.backup_now(timezone="UTC")
    clock.advance(days=1)
    manager.backup_now(timezone="UTC")

    assert manager.prune(1) == ["2025/06/2025-06-02-153045"]

    missing = BackupManager(
        settings_loader=lambda: AppSettings(backup_root=manager.backup_root().parent / "nope")
    )
    with pytest.raises(BackupRootNotFound):
        missing.list_snapshots()


def test_parent_references_rejected(live_dir, tmp_path):
    manager = BackupManager(
        settings_loader=lambda: AppSettings(live_config_path=live_dir, backup_root=tmp_path / ".." / "x")
    )

    with pytest.raises(InvalidPath):
        manager.backup_now()
    with pytest.raises(InvalidPath):
        manager.validate_backup_root(tmp_path / ".." / "x")


def test_history_only_operations(manager):
    with pytest.raises(InvalidInput):
        manager.migrate()
    with pytest.raises(InvalidInput):
        manager.autosave(WatchEvent(path=manager.settings().live_config_path / "automations.yaml", event_type="modified"))


def test_autosave_in_history_mode(git_available, settings, clock, live_dir):
    manager = BackupManager(
        settings_loader=lambda: settings.replace(backend_mode=BackendMode.HISTORY), clock=clock
    )
    manager.backup_now(BackupKind.SCHEDULED)
    (live_dir / "automations.yaml").write_text("- id: a2\n  alias: New\n")
    clock.advance(seconds=30)

    result = manager.autosave(WatchEvent(path=live_dir / "automations.yaml", event_type="modified"))

    assert result.created
    assert manager.list_snapshots()[0].kind == BackupKind.AUTOSAVE
    assert manager.stats()["autosave_backups"] == 1
