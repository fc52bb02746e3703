import json
from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from ha_time_machine.backup_manager import BackupManager
from ha_time_machine.cli import cli
from ha_time_machine.config import AppSettings
from ha_time_machine.git_wrapper import GitError
from ha_time_machine.models import BackendMode
from ha_time_machine.schedule_store import ScheduleStore
from ha_time_machine.scheduler import ScheduleEngine

from .conftest import FixedClock


@pytest.fixture
def manager(live_dir, backup_root, clock):
    settings = AppSettings(live_config_path=live_dir, backup_root=backup_root)
    return BackupManager(settings_loader=lambda: settings, clock=clock)


@pytest.fixture
def invoke(manager, tmp_path):
    runner = CliRunner()

    def run(*args):
        return runner.invoke(
            cli,
            ["--settings", str(tmp_path / "settings.json"), "--schedule-file", str(tmp_path / "jobs.json"), *args],
            obj={"manager": manager},
        )

    return run


SNAPSHOT_ID = "2025/06/2025-06-02-153045"


def test_write_now_then_browse(invoke, live_dir):
    result = invoke("write-now", "--timezone", "UTC")
    assert result.exit_code == 0, result.output
    assert "Backup created" in result.output

    listing = invoke("list-files", SNAPSHOT_ID)
    assert listing.exit_code == 0
    assert "automations.yaml" in listing.output.splitlines()

    shown = invoke("show-file", SNAPSHOT_ID, "automations.yaml")
    assert shown.exit_code == 0
    assert shown.output == (live_dir / "automations.yaml").read_text()

    tree = invoke("tree", "--json")
    assert tree.exit_code == 0
    assert any(node["name"] == ".storage" for node in json.loads(tree.output))


def test_errors_map_to_exit_codes(invoke):
    assert invoke("scan").exit_code == 2

    invoke("write-now", "--timezone", "UTC")
    assert invoke("diff", SNAPSHOT_ID).exit_code == 7
    assert invoke("show-file", SNAPSHOT_ID, "missing.yaml").exit_code == 2
    assert invoke("restore-file", SNAPSHOT_ID, "../secrets.yaml").exit_code == 5
    assert invoke("restore-item", SNAPSHOT_ID, "automations", "nope").exit_code == 5
    assert invoke("migrate").exit_code == 5


def test_restore_item_command(invoke, live_dir):
    invoke("write-now", "--timezone", "UTC")
    (live_dir / "automations.yaml").write_text("[]\n")

    result = invoke("restore-item", SNAPSHOT_ID, "automations", "a1")

    assert result.exit_code == 0, result.output
    assert "automation.reload" in result.output
    assert "a1" in (live_dir / "automations.yaml").read_text()


def test_schedule_commands(invoke, tmp_path):
    assert invoke("set-schedule", "nightly", "61 2 * * *").exit_code == 5

    saved = invoke("set-schedule", "nightly", "0 2 * * *", "--timezone", "UTC", "--keep", "10")
    assert saved.exit_code == 0, saved.output

    shown = invoke("get-schedule", "--json")
    jobs = json.loads(shown.output)["jobs"]
    assert jobs["nightly"]["cronExpression"] == "0 2 * * *"
    assert jobs["nightly"]["retentionEnabled"] is True
    assert jobs["nightly"]["retentionCount"] == 10
    assert json.loads((tmp_path / "jobs.json").read_text()) == {"jobs": jobs}

    assert invoke("remove-schedule", "nightly").exit_code == 0
    assert invoke("remove-schedule", "nightly").exit_code == 2


def test_schedule_commands_reach_running_daemon_engine(invoke, tmp_path):
    assert invoke("set-schedule", "nightly", "0 2 * * *", "--timezone", "UTC").exit_code == 0

    fired = []
    clock = FixedClock(datetime(2025, 6, 2, 1, 0, tzinfo=timezone.utc))
    daemon = ScheduleEngine(ScheduleStore(tmp_path / "jobs.json"), lambda job: fired.append(job.id), clock=clock)
    assert daemon.load_all() == 1

    disabled = invoke("set-schedule", "nightly", "0 2 * * *", "--timezone", "UTC", "--disabled")
    assert disabled.exit_code == 0, disabled.output

    assert daemon.tick(datetime(2025, 6, 2, 2, 0, tzinfo=timezone.utc)) == []
    assert fired == []


def test_prune_command(invoke, clock):
    invoke("write-now", "--timezone", "UTC")
    clock.advance(days=1)
    invoke("write-now", "--timezone", "UTC")

    result = invoke("prune", "1")

    assert result.exit_code == 0
    assert "Removed 1 backups" in result.output


def test_init_settings(tmp_path):
    settings_path = tmp_path / "settings.json"
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["--settings", str(settings_path), "init-settings", "--mode", "history", "--backup-root", str(tmp_path / "b")],
    )

    assert result.exit_code == 0, result.output
    data = json.loads(settings_path.read_text())
    assert data["backupMode"] == "history"
    assert data["backupFolderPath"] == str(tmp_path / "b")


def test_missing_git_binary_is_a_clean_exit(live_dir, backup_root, clock, tmp_path, monkeypatch):
    empty_bin = tmp_path / "bin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))

    settings = AppSettings(live_config_path=live_dir, backup_root=backup_root, backend_mode=BackendMode.HISTORY)
    manager = BackupManager(settings_loader=lambda: settings, clock=clock)

    result = CliRunner().invoke(
        cli,
        ["--settings", str(tmp_path / "settings.json"), "write-now", "--timezone", "UTC"],
        obj={"manager": manager},
    )

    assert result.exit_code == GitError.exit_code == 8
    assert isinstance(result.exception, SystemExit)
    assert "Git binary not found" in result.output
