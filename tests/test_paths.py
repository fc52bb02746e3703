import pytest

from ha_time_machine.errors import InvalidPath
from ha_time_machine.paths import (
    list_yaml_files_recursive,
    normalize_relative_path,
    reject_parent_references,
    resolve_within_directory,
)


def test_resolve_within_directory(tmp_path):
    assert resolve_within_directory(tmp_path, "esphome/kitchen.yaml") == tmp_path / "esphome" / "kitchen.yaml"


@pytest.mark.parametrize("bad", ["", "   ", "../secrets.yaml", "esphome/../../etc/passwd", "/etc/passwd", "."])
def test_resolve_within_directory_rejects_escapes(tmp_path, bad):
    with pytest.raises(InvalidPath):
        resolve_within_directory(tmp_path, bad)


def test_normalize_relative_path():
    assert normalize_relative_path("./esphome//kitchen.yaml") == "esphome/kitchen.yaml"
    with pytest.raises(InvalidPath):
        normalize_relative_path("../outside.yaml")
    with pytest.raises(InvalidPath):
        normalize_relative_path(None)


def test_reject_parent_references():
    with pytest.raises(InvalidPath):
        reject_parent_references("/media/../etc")
    assert str(reject_parent_references("/media/timemachine")) == "/media/timemachine"


def test_list_yaml_files_recursive(tmp_path):
    (tmp_path / "sub" / ".hidden").mkdir(parents=True)
    (tmp_path / "a.yaml").write_text("")
    (tmp_path / "sub" / "b.yml").write_text("")
    (tmp_path / "sub" / "notes.txt").write_text("")
    (tmp_path / "sub" / ".hidden" / "c.yaml").write_text("")

    assert list_yaml_files_recursive(tmp_path) == ["a.yaml", "sub/b.yml"]
    assert list_yaml_files_recursive(tmp_path / "missing") == []
