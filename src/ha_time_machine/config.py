import dataclasses
import json
import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from .errors import InvalidInput
from .models import BackendMode, FeatureFlags

DEFAULT_LIVE_PATH = Path("/config")
DEFAULT_BACKUP_ROOT = Path("/media/timemachine")
DEFAULT_WATCHED_PATHS = ("config", "lovelace", "esphome", "packages")
SETTINGS_FILE_NAME = "docker-app-settings.json"
SCHEDULE_FILE_NAME = "scheduled-jobs.json"


@dataclass(frozen=True)
class AppSettings:
    backend_mode: BackendMode = BackendMode.FOLDER
    live_config_path: Path = DEFAULT_LIVE_PATH
    backup_root: Path = DEFAULT_BACKUP_ROOT
    retention_enabled: bool = False
    retention_count: int = 100
    watch_enabled: bool = False
    watch_debounce_seconds: float = 60.0
    watched_paths: tuple[str, ...] = DEFAULT_WATCHED_PATHS
    features: FeatureFlags = field(default_factory=FeatureFlags)
    ha_url: str | None = None
    ha_token: str | None = None

    def replace(self, **changes: Any) -> "AppSettings":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backupMode": self.backend_mode.value,
            "liveConfigPath": str(self.live_config_path),
            "backupFolderPath": str(self.backup_root),
            "retentionEnabled": self.retention_enabled,
            "retentionCount": self.retention_count,
            "fileWatchingEnabled": self.watch_enabled,
            "fileWatchingDebounce": self.watch_debounce_seconds,
            "watchedPaths": list(self.watched_paths),
            "esphomeEnabled": self.features.device_definitions,
            "packagesEnabled": self.features.user_packages,
            "haUrl": self.ha_url,
            "haToken": self.ha_token,
        }


def data_dir() -> Path:
    """Persistent directory for settings and the schedule file."""
    override = os.environ.get("TIME_MACHINE_DATA_DIR")
    if override:
        directory = Path(override)
    elif Path("/data").exists():
        directory = Path("/data") / "homeassistant-time-machine"
    else:
        directory = Path.cwd() / "data"

    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to ensure data directory {directory} exists: {e}")
    return directory


def default_settings_path() -> Path:
    return data_dir() / SETTINGS_FILE_NAME


def default_schedule_path() -> Path:
    return data_dir() / SCHEDULE_FILE_NAME


_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


def parse_bool(value: Any) -> bool:
    """Settings flags arrive as JSON booleans or as strings from hand-edited files."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


def settings_from_dict(data: dict[str, Any]) -> AppSettings:
    defaults = AppSettings()

    def pick(*keys: str, default: Any = None) -> Any:
        for key in keys:
            if data.get(key) is not None:
                return data[key]
        return default

    watched = pick("watchedPaths", "watched_paths", default=list(defaults.watched_paths))
    try:
        return AppSettings(
            backend_mode=BackendMode.parse(pick("backupMode", "backend_mode")),
            live_config_path=Path(pick("liveConfigPath", "live_config_path", default=defaults.live_config_path)),
            backup_root=Path(pick("backupFolderPath", "backup_root", default=defaults.backup_root)),
            retention_enabled=parse_bool(
                pick("retentionEnabled", "maxBackupsEnabled", default=defaults.retention_enabled)
            ),
            retention_count=int(
                pick("retentionCount", "maxBackupsCount", default=defaults.retention_count)
            ),
            watch_enabled=parse_bool(pick("fileWatchingEnabled", "watch_enabled", default=False)),
            watch_debounce_seconds=float(
                pick("fileWatchingDebounce", "watch_debounce_seconds", default=defaults.watch_debounce_seconds)
            ),
            watched_paths=tuple(watched),
            features=FeatureFlags(
                device_definitions=parse_bool(pick("esphomeEnabled", "esphome", default=False)),
                user_packages=parse_bool(pick("packagesEnabled", "packages", default=False)),
            ),
            ha_url=pick("haUrl", "home_assistant_url"),
            ha_token=pick("haToken", "long_lived_access_token"),
        )
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid settings: {e}")


def _apply_env_overrides(settings: AppSettings) -> AppSettings:
    changes: dict[str, Any] = {}
    if os.environ.get("TIME_MACHINE_BACKUP_MODE"):
        changes["backend_mode"] = BackendMode.parse(os.environ["TIME_MACHINE_BACKUP_MODE"])
    if os.environ.get("TIME_MACHINE_LIVE_PATH"):
        changes["live_config_path"] = Path(os.environ["TIME_MACHINE_LIVE_PATH"])
    if os.environ.get("TIME_MACHINE_BACKUP_ROOT"):
        changes["backup_root"] = Path(os.environ["TIME_MACHINE_BACKUP_ROOT"])
    return settings.replace(**changes) if changes else settings


def load_settings(settings_path: Path | None = None) -> AppSettings:
    """Read a fresh, immutable settings snapshot."""
    settings_path = settings_path or default_settings_path()

    if not settings_path.exists():
        logger.debug(f"No settings file at {settings_path}, using defaults")
        return _apply_env_overrides(AppSettings())

    try:
        with open(settings_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Invalid settings file {settings_path}: {e}")

    if not isinstance(data, dict):
        raise InvalidInput(f"Invalid settings file {settings_path}: expected an object")

    return _apply_env_overrides(settings_from_dict(data))


def save_settings(settings: AppSettings, settings_path: Path | None = None) -> Path:
    settings_path = settings_path or default_settings_path()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_path, "w") as f:
        json.dump(settings.to_dict(), f, indent=2)
    logger.info(f"Settings saved to {settings_path}")
    return settings_path


def home_assistant_credentials_configured(settings: AppSettings) -> bool:
    if settings.ha_url and settings.ha_token:
        return True
    for variable in ("SUPERVISOR_TOKEN", "HASSIO_TOKEN"):
        token = os.environ.get(variable)
        if token and token.strip():
            return True
    return False


def resolve_timezone(name: str | None) -> tzinfo | None:
    """ZoneInfo for an IANA name; None means the server's local time."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidInput(f"Unknown timezone {name!r}: {e}")
