from __future__ import annotations

from pathlib import Path

import pytest

from weave_utils.core import config as core_config


def test_load_toml_parses_file(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text('[execution]\nformats = ["pdf"]\n', encoding="utf-8")

    assert core_config.load_toml(path) == {"execution": {"formats": ["pdf"]}}


def test_load_toml_wraps_missing_and_invalid(tmp_path: Path) -> None:
    with pytest.raises(core_config.TomlConfigError, match="not found"):
        core_config.load_toml(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[execution\n", encoding="utf-8")
    with pytest.raises(core_config.TomlConfigError, match="Invalid TOML"):
        core_config.load_toml(broken)


def test_merge_defaults_overrides_nested_values() -> None:
    base = {"execution": {"concurrency": 4, "mode": "auto"}, "logging": {}}

    core_config.merge_defaults(base, {"execution": {"concurrency": 2}})

    assert base["execution"] == {"concurrency": 2, "mode": "auto"}


def test_merge_defaults_rejects_unknown_keys() -> None:
    base = {"execution": {"concurrency": 4}}

    with pytest.raises(core_config.TomlConfigError) as excinfo:
        core_config.merge_defaults(base, {"execution": {"workers": 2}})

    assert "execution.workers" in str(excinfo.value)


def test_merge_defaults_open_tables_accept_new_keys() -> None:
    base = {"commands": {}}

    core_config.merge_defaults(
        base,
        {"commands": {"pdf": ["pandoc", "{input}"]}},
        open_tables=("commands",),
    )

    assert base["commands"] == {"pdf": ["pandoc", "{input}"]}


def test_merge_defaults_requires_table_for_table() -> None:
    base = {"paths": {"output_dir": None}}

    with pytest.raises(core_config.TomlConfigError, match="Expected a table"):
        core_config.merge_defaults(base, {"paths": "out"})


def test_write_toml_template_refuses_overwrite(tmp_path: Path) -> None:
    target = tmp_path / "cfg" / "export.toml"

    core_config.write_toml_template(target, template="a = 1\n")
    with pytest.raises(core_config.TomlConfigError):
        core_config.write_toml_template(target, template="a = 2\n")
    core_config.write_toml_template(
        target, template="a = 3\n", overwrite=True
    )

    assert target.read_text(encoding="utf-8") == "a = 3\n"
