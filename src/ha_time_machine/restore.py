import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from .backend import SnapshotBackend
from .errors import InvalidInput, ItemNotFound
from .models import BackupResult, RestoreResult
from .paths import normalize_relative_path, resolve_within_directory

ITEM_FILES = {
    "automations": "automations.yaml",
    "scripts": "scripts.yaml",
}
RELOAD_SERVICES = {
    "automations.yaml": "automation.reload",
    "scripts.yaml": "script.reload",
}


def reload_service_for(relative_path: str) -> str | None:
    """Service that picks up a restored file, or None when a restart is needed."""
    return RELOAD_SERVICES.get(relative_path)


def load_yaml(content: bytes | str, source: str) -> Any:
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise InvalidInput(f"Could not parse {source}: {e}")


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def items_from_document(document: Any) -> tuple[list[dict], bool]:
    """Normalize an automations/scripts document to a list of items.

    Scripts are usually stored as a mapping keyed by script id; those items get
    the key as their `id`. Returns (items, was_mapping).
    """
    if isinstance(document, dict):
        items = []
        for key, body in document.items():
            item = {"id": key}
            if isinstance(body, dict):
                item.update(body)
            items.append(item)
        return items, True
    if isinstance(document, list):
        return [item for item in document if isinstance(item, dict)], False
    return [], False


def items_to_mapping(items: list[dict]) -> dict:
    mapping = {}
    for item in items:
        key = item.get("id") or item.get("alias")
        if not key:
            logger.warning("Dropping script without id or alias")
            continue
        mapping[key] = {k: v for k, v in item.items() if k != "id"}
    return mapping


def item_matches(item: dict, identifier: str) -> bool:
    return str(item.get("id")) == identifier or item.get("alias") == identifier


def find_item(items: list[dict], identifier: str) -> dict | None:
    for item in items:
        if item_matches(item, identifier):
            return item
    return None


def merge_item(items: list[dict], restored: dict) -> list[dict]:
    """Replace the entry sharing the restored item's id or alias, else append."""
    keys = [str(restored["id"])] if restored.get("id") is not None else []
    if restored.get("alias"):
        keys.append(restored["alias"])

    merged = []
    replaced = False
    for item in items:
        if any(item_matches(item, key) for key in keys):
            if not replaced:
                merged.append(restored)
                replaced = True
            continue
        merged.append(item)

    if not replaced:
        merged.append(restored)
    return merged


class RestoreService:
    def __init__(
        self,
        backend: SnapshotBackend,
        live_dir: Path,
        pre_restore: Callable[[], BackupResult | None],
        credentials_configured: bool = False,
    ):
        self.backend = backend
        self.live_dir = Path(live_dir)
        self.pre_restore = pre_restore
        self.credentials_configured = credentials_configured

    def _take_pre_restore(self) -> BackupResult | None:
        logger.info("Creating pre-restore backup")
        return self.pre_restore()

    def restore_file(
        self, snapshot_id: str, file_path: str, destination: str | None = None
    ) -> RestoreResult:
        relative = normalize_relative_path(file_path)
        target = resolve_within_directory(self.live_dir, destination or relative)

        content = self.backend.read_file(snapshot_id, relative)
        pre_restore = self._take_pre_restore()

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        logger.info(f"Restored {relative} from {snapshot_id} to {target}")

        target_relative = target.relative_to(os.path.abspath(self.live_dir)).as_posix()
        return RestoreResult(
            target=target,
            reload_service=reload_service_for(target_relative),
            credentials_configured=self.credentials_configured,
            pre_restore=pre_restore,
        )

    def list_items(self, snapshot_id: str, mode: str) -> list[dict]:
        file_name = self._item_file(mode)
        document = load_yaml(self.backend.read_file(snapshot_id, file_name), file_name)
        return items_from_document(document)[0]

    def restore_item(self, snapshot_id: str, mode: str, identifier: str) -> RestoreResult:
        if not identifier or not str(identifier).strip():
            raise InvalidInput("An item id or alias is required")
        file_name = self._item_file(mode)

        restored = find_item(self.list_items(snapshot_id, mode), str(identifier))
        if restored is None:
            raise ItemNotFound(str(identifier), file_name)

        pre_restore = self._take_pre_restore()

        live_file = self.live_dir / file_name
        live_items: list[dict] = []
        as_mapping = mode == "scripts"
        if live_file.exists():
            live_items, was_mapping = items_from_document(load_yaml(live_file.read_text(), file_name))
            as_mapping = was_mapping or (mode == "scripts" and not live_items)

        merged = merge_item(live_items, restored)
        document = items_to_mapping(merged) if as_mapping else merged
        live_file.write_text(dump_yaml(document))
        logger.info(f"Restored {mode[:-1]} {identifier!r} from {snapshot_id}")

        return RestoreResult(
            target=live_file,
            reload_service=reload_service_for(file_name),
            credentials_configured=self.credentials_configured,
            pre_restore=pre_restore,
        )

    @staticmethod
    def _item_file(mode: str) -> str:
        try:
            return ITEM_FILES[mode]
        except KeyError:
            raise InvalidInput(f"Unknown restore mode {mode!r}, expected automations or scripts")
