import pytest

from limahost.load import DEFAULT_FILENAME, OVERRIDE_FILENAME, load


def _file_path(tmp_path):
    return str(tmp_path / "instance" / "lima.yaml")


def test_builtin_defaults_without_config_dir(tmp_path):
    y = load(b"arch: x86_64\n", _file_path(tmp_path))
    assert y.arch == "x86_64"
    assert y.cpus == 4
    assert y.memory == "4GiB"
    assert y.disk == "100GiB"
    assert y.mount_type == "reverse-sshfs"


def test_missing_files_in_config_dir_are_ignored(tmp_path):
    cfg = tmp_path / "_config"
    cfg.mkdir()
    y = load("cpus: 2\n", _file_path(tmp_path), str(cfg))
    assert y.cpus == 2
    assert y.host_resolver.enabled is True


def test_default_file_fills_unset_fields(tmp_path):
    cfg = tmp_path / "_config"
    cfg.mkdir()
    (cfg / DEFAULT_FILENAME).write_text("cpus: 7\nmemory: 5GiB\n")
    y = load("memory: 3GiB\n", _file_path(tmp_path), str(cfg))
    assert y.cpus == 7
    assert y.memory == "3GiB"


def test_override_file_wins(tmp_path):
    cfg = tmp_path / "_config"
    cfg.mkdir()
    (cfg / DEFAULT_FILENAME).write_text("cpus: 7\n")
    (cfg / OVERRIDE_FILENAME).write_text("cpus: 12\nenv:\n  TWO: deux\n")
    y = load("cpus: 2\nenv:\n  ONE: Eins\n", _file_path(tmp_path), str(cfg))
    assert y.cpus == 12
    assert y.env == {"ONE": "Eins", "TWO": "deux"}


def test_invalid_yaml_raises(tmp_path):
    with pytest.raises(ValueError):
        load("cpus: [1, 2\n", _file_path(tmp_path))


def test_invalid_default_file_raises(tmp_path):
    cfg = tmp_path / "_config"
    cfg.mkdir()
    (cfg / DEFAULT_FILENAME).write_text("cpus: {\n")
    with pytest.raises(ValueError):
        load("", _file_path(tmp_path), str(cfg))