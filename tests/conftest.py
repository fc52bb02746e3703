import shutil
from datetime import datetime, timedelta, timezone

import pytest

FIXED_NOW = datetime(2025, 6, 2, 15, 30, 45, tzinfo=timezone.utc)

AUTOMATIONS_YAML = """\
- id: "a1"
  alias: Test
  trigger: []
  action: []
"""

SCRIPTS_YAML = """\
morning:
  alias: Morning
  sequence: []
"""


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def live_dir(tmp_path):
    live = tmp_path / "config"
    live.mkdir()
    (live / "automations.yaml").write_text(AUTOMATIONS_YAML)
    (live / "scripts.yaml").write_text(SCRIPTS_YAML)
    (live / "configuration.yaml").write_text("homeassistant:\n  name: Home\n")
    (live / "home-assistant.log").write_text("log line\n")

    storage = live / ".storage"
    storage.mkdir()
    (storage / "lovelace").write_text('{"data": {"config": {}}}')
    (storage / "lovelace_dashboards").write_text('{"data": {"items": []}}')
    (storage / "core.config_entries").write_text("{}")

    esphome = live / "esphome"
    (esphome / "devices").mkdir(parents=True)
    (esphome / "kitchen.yaml").write_text("esphome:\n  name: kitchen\n")
    (esphome / "devices" / "porch.yaml").write_text("esphome:\n  name: porch\n")

    packages = live / "packages"
    packages.mkdir()
    (packages / "lights.yaml").write_text("light: []\n")
    return live


@pytest.fixture
def backup_root(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def git_available():
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
