"""TOML configuration helpers shared by weave commands."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Collection, Mapping, MutableMapping

try:  # Python >= 3.11 ships ``tomllib`` in the stdlib.
    import tomllib
except ModuleNotFoundError as exc:  # pragma: no cover - interpreter guard
    raise RuntimeError("Python 3.11+ is required for tomllib support.") from exc

__all__ = [
    "TomlConfigError",
    "load_toml",
    "merge_defaults",
    "write_toml_template",
]


class TomlConfigError(RuntimeError):
    """Raised when a TOML config cannot be read or does not validate."""


def load_toml(path: Path) -> Mapping[str, Any]:
    """Parse the TOML document stored at ``path``.

    Read and decode failures are wrapped in :class:`TomlConfigError` so each
    command can re-raise them as its own configuration error.
    """

    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise TomlConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise TomlConfigError(f"Invalid TOML in {path}: {exc}") from exc


def merge_defaults(
    base: MutableMapping[str, Any],
    override: Mapping[str, Any],
    *,
    open_tables: Collection[str] = (),
    path: str = "",
) -> None:
    """Merge ``override`` into ``base`` in place, rejecting unknown keys.

    Tables whose dotted name appears in ``open_tables`` accept arbitrary keys;
    every other table only accepts the keys already present in ``base``.
    """

    for key, value in override.items():
        dotted = f"{path}{key}"
        if key not in base:
            if path.rstrip(".") not in open_tables:
                raise TomlConfigError(f"Unknown configuration key '{dotted}'.")
            base[key] = value
            continue
        current = base[key]
        if isinstance(current, MutableMapping):
            if not isinstance(value, Mapping):
                raise TomlConfigError(
                    f"Expected a table for '{dotted}', "
                    f"found {type(value).__name__}."
                )
            merge_defaults(
                current,
                value,
                open_tables=open_tables,
                path=f"{dotted}.",
            )
            continue
        base[key] = value


def write_toml_template(
    path: Path,
    *,
    template: str,
    overwrite: bool = False,
    mode: int = 0o600,
) -> Path:
    """Write ``template`` to ``path``; refuse to clobber unless ``overwrite``."""

    if path.exists() and not overwrite:
        raise TomlConfigError(f"Config already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(template, encoding="utf-8")
    try:
        path.chmod(mode)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
    return path
