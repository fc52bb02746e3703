"""Path helpers shared by the writer, scanner and restore code."""

import os
from pathlib import Path

from .errors import InvalidPath

YAML_EXTENSIONS = frozenset({".yaml", ".yml"})


def is_yaml_file(path: Path) -> bool:
    return path.suffix.lower() in YAML_EXTENSIONS


def list_yaml_files_recursive(root_dir: Path) -> list[str]:
    """Return YAML files under root_dir as sorted posix-style relative paths.

    Hidden entries and symlinks are skipped. A missing root yields an empty list.
    """
    results: list[str] = []

    def walk(current: Path, prefix: str):
        try:
            entries = list(os.scandir(current))
        except FileNotFoundError:
            return

        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_symlink():
                continue

            relative = f"{prefix}/{entry.name}" if prefix else entry.name
            if entry.is_dir():
                walk(Path(entry.path), relative)
            elif entry.is_file() and is_yaml_file(Path(entry.name)):
                results.append(relative)

    walk(root_dir, "")
    results.sort()
    return results


def resolve_within_directory(base_dir: Path, relative_path: str | None) -> Path:
    """Resolve a user-supplied relative path, refusing anything outside base_dir."""
    if not isinstance(relative_path, str) or not relative_path.strip():
        raise InvalidPath(relative_path)

    base = Path(os.path.abspath(base_dir))
    target = Path(os.path.abspath(base / relative_path.strip()))

    if target == base or base not in target.parents:
        raise InvalidPath(relative_path)

    return target


def normalize_relative_path(relative_path: str | None) -> str:
    """Validate a repository-relative path and return it in posix form."""
    if not isinstance(relative_path, str) or not relative_path.strip():
        raise InvalidPath(relative_path)

    anchor = Path("/__root__")
    resolved = resolve_within_directory(anchor, relative_path)
    return resolved.relative_to(anchor).as_posix()


def reject_parent_references(path: Path | str) -> Path:
    if ".." in Path(path).parts:
        raise InvalidPath(str(path))
    return Path(path)
