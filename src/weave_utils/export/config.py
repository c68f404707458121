"""Configuration loader for the export workflow."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, MutableMapping, Optional, Sequence

from weave_utils.core import config as core_config
from weave_utils.core import workspace as workspace_mod
from weave_utils.core.files import normalize_extensions

from .scheduler import Mode

CONFIG_FILENAME = "export.toml"
CONFIG_ENV = "WEAVE_EXPORT_CONFIG"
ENV_PREFIX = "WEAVE_EXPORT_"

_DEFAULT_FORMATS: tuple[str, ...] = ("html",)
_DEFAULT_EXTENSIONS: tuple[str, ...] = ("md", "markdown")
_DEFAULT_CONCURRENCY = 4
_DEFAULT_MODE = "auto"
_DEFAULT_POLL_INTERVAL = 0.1
_DEFAULT_STATUS_INTERVAL = 0.1
_DEFAULT_LOG_LEVEL = "INFO"


class ExportConfigError(RuntimeError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class ExportConfig:
    """Fully resolved configuration for an export run."""

    formats: tuple[str, ...]
    extensions: tuple[str, ...]
    output_dir: Optional[Path]
    concurrency: int
    mode: Mode
    poll_interval: float
    status_interval: float
    commands: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    log_level: str = _DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class ConfigOverrides:
    """CLI-sourced overrides applied on top of file/env options."""

    formats: Optional[Sequence[str]] = None
    output_dir: Optional[Path] = None
    concurrency: Optional[int] = None
    mode: Optional[Mode] = None
    log_level: Optional[str] = None


@dataclass(frozen=True)
class LoadResult:
    """Result of loading configuration, including workspace context."""

    config: ExportConfig
    layout: workspace_mod.WorkspaceLayout
    config_path: Optional[Path]


def load_config(
    *,
    config_path: Optional[Path] = None,
    overrides: Optional[ConfigOverrides] = None,
    env: Optional[Mapping[str, str]] = None,
    workspace_path: Optional[Path] = None,
) -> LoadResult:
    """Load configuration applying precedence CLI > env > TOML defaults."""

    overrides = overrides or ConfigOverrides()
    env_map = os.environ if env is None else env

    try:
        layout = workspace_mod.ensure_workspace(
            env=env_map, path=workspace_path
        )
    except workspace_mod.WorkspaceError as exc:
        raise ExportConfigError(str(exc)) from exc
    default_path = layout.path_for("config") / CONFIG_FILENAME

    requested_path = _resolve_config_path(
        config_path=config_path,
        env_map=env_map,
        default_path=default_path,
    )

    defaults = _default_table()
    loaded_path: Optional[Path]

    if requested_path.exists():
        loaded_path = requested_path
        try:
            parsed = core_config.load_toml(requested_path)
            core_config.merge_defaults(
                defaults, parsed, open_tables=("commands",)
            )
        except core_config.TomlConfigError as exc:
            raise ExportConfigError(str(exc)) from exc
    else:
        loaded_path = None
        if config_path is not None or _has_env_config(env_map):
            raise ExportConfigError(f"Config file not found: {requested_path}")

    paths = defaults["paths"]
    execution = defaults["execution"]

    formats = _normalize_formats(
        _pick_first(
            overrides.formats,
            _parse_env_list(env_map, "FORMATS"),
            execution["formats"],
        )
    )
    extensions = _resolve_extensions(
        _pick_first(
            _parse_env_list(env_map, "EXTENSIONS"),
            execution["extensions"],
        )
    )
    output_dir = _resolve_output_dir(
        _pick_first(
            overrides.output_dir,
            _parse_env_path(env_map, "OUTPUT_DIR"),
            _coerce_optional_path(paths["output_dir"]),
        )
    )
    concurrency = _resolve_concurrency(
        _pick_first(
            overrides.concurrency,
            _parse_env_string(env_map, "CONCURRENCY"),
            execution["concurrency"],
        )
    )
    mode = _resolve_mode(
        overrides.mode,
        _parse_env_string(env_map, "MODE"),
        execution["mode"],
    )
    poll_interval = _resolve_interval(
        "execution.poll_interval",
        _pick_first(
            _parse_env_string(env_map, "POLL_INTERVAL"),
            execution["poll_interval"],
        ),
    )
    status_interval = _resolve_interval(
        "execution.status_interval",
        _pick_first(
            _parse_env_string(env_map, "STATUS_INTERVAL"),
            execution["status_interval"],
        ),
    )
    log_level = _resolve_log_level(
        overrides.log_level,
        _parse_env_string(env_map, "LOG_LEVEL"),
        defaults["logging"]["level"],
    )

    config = ExportConfig(
        formats=formats,
        extensions=extensions,
        output_dir=output_dir,
        concurrency=concurrency,
        mode=mode,
        poll_interval=poll_interval,
        status_interval=status_interval,
        commands=_resolve_commands(defaults["commands"]),
        log_level=log_level,
    )
    return LoadResult(config=config, layout=layout, config_path=loaded_path)


def _default_table() -> MutableMapping[str, MutableMapping[str, object]]:
    return {
        "paths": {"output_dir": None},
        "execution": {
            "formats": list(_DEFAULT_FORMATS),
            "extensions": list(_DEFAULT_EXTENSIONS),
            "concurrency": _DEFAULT_CONCURRENCY,
            "mode": _DEFAULT_MODE,
            "poll_interval": _DEFAULT_POLL_INTERVAL,
            "status_interval": _DEFAULT_STATUS_INTERVAL,
        },
        "commands": {},
        "logging": {"level": _DEFAULT_LOG_LEVEL},
    }


def _resolve_config_path(
    *,
    config_path: Optional[Path],
    env_map: Mapping[str, str],
    default_path: Path,
) -> Path:
    if config_path is not None:
        return config_path.expanduser()
    env_candidate = env_map.get(CONFIG_ENV)
    if env_candidate and env_candidate.strip():
        return Path(env_candidate.strip()).expanduser()
    return default_path


def _has_env_config(env_map: Mapping[str, str]) -> bool:
    env_candidate = env_map.get(CONFIG_ENV)
    return bool(env_candidate and env_candidate.strip())


def _coerce_optional_path(value: object) -> Optional[Path]:
    if value is None:
        return None
    if isinstance(value, Path):
        return value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        return Path(raw)
    raise ExportConfigError("paths.output_dir must be a string when provided.")


def _resolve_output_dir(candidate: object) -> Optional[Path]:
    if candidate is None:
        return None
    assert isinstance(candidate, Path)
    return candidate.expanduser().resolve()


def _normalize_formats(value: object) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ExportConfigError("execution.formats must be a list of strings.")
    result: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ExportConfigError("Formats must be non-empty strings.")
        normalized = item.strip().lower()
        if normalized not in result:
            result.append(normalized)
    if not result:
        raise ExportConfigError("At least one format must be configured.")
    return tuple(result)


def _resolve_extensions(value: object) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ExportConfigError(
            "execution.extensions must be a list of strings."
        )
    if not all(isinstance(item, str) for item in value):
        raise ExportConfigError("Extensions must be strings.")
    return normalize_extensions(value, default=_DEFAULT_EXTENSIONS)


def _resolve_concurrency(value: object) -> int:
    if isinstance(value, bool):
        raise ExportConfigError("execution.concurrency must be an integer.")
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError as exc:
            raise ExportConfigError(
                f"execution.concurrency must be an integer, got '{value}'."
            ) from exc
    if not isinstance(value, int):
        raise ExportConfigError("execution.concurrency must be an integer.")
    if value < 1:
        raise ExportConfigError(
            "execution.concurrency must be a positive integer."
        )
    return value


def _resolve_mode(
    override: Optional[Mode],
    env_value: Optional[str],
    file_value: object,
) -> Mode:
    if override is not None:
        return override
    candidate = env_value if env_value is not None else file_value
    if isinstance(candidate, Mode):
        return candidate
    if not isinstance(candidate, str):
        raise ExportConfigError(
            "execution.mode must be one of: auto, sync, async."
        )
    try:
        return Mode.from_value(candidate)
    except ValueError as exc:
        raise ExportConfigError(str(exc)) from exc


def _resolve_interval(name: str, value: object) -> float:
    if isinstance(value, bool):
        raise ExportConfigError(f"{name} must be a number.")
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError as exc:
            raise ExportConfigError(
                f"{name} must be a number, got '{value}'."
            ) from exc
    if not isinstance(value, (int, float)):
        raise ExportConfigError(f"{name} must be a number.")
    if value < 0:
        raise ExportConfigError(f"{name} must not be negative.")
    return float(value)


def _resolve_commands(
    table: Mapping[str, object],
) -> Mapping[str, tuple[str, ...]]:
    commands: dict[str, tuple[str, ...]] = {}
    for format_id, argv in table.items():
        if (
            isinstance(argv, str)
            or not isinstance(argv, Sequence)
            or not argv
            or not all(isinstance(part, str) and part for part in argv)
        ):
            raise ExportConfigError(
                f"commands.{format_id} must be a non-empty list of strings."
            )
        commands[format_id.strip().lower()] = tuple(argv)
    return commands


def _resolve_log_level(
    override: Optional[str],
    env_value: Optional[str],
    file_value: object,
) -> str:
    candidate = _pick_first(override, env_value, file_value)
    if candidate is None:
        raise ExportConfigError("logging.level must be provided.")
    if not isinstance(candidate, str):
        raise ExportConfigError("logging.level must be a string.")
    level = candidate.strip()
    if not level:
        raise ExportConfigError("logging.level must be a non-empty string.")
    return level.upper()


def _parse_env_list(
    env_map: Mapping[str, str], key: str
) -> Optional[Sequence[str]]:
    raw = _parse_env_string(env_map, key)
    if raw is None:
        return None
    parts = [part for part in raw.replace(",", " ").split() if part]
    return parts or None


def _parse_env_path(env_map: Mapping[str, str], key: str) -> Optional[Path]:
    raw = _parse_env_string(env_map, key)
    if raw is None:
        return None
    return Path(raw).expanduser()


def _parse_env_string(env_map: Mapping[str, str], key: str) -> Optional[str]:
    raw = env_map.get(f"{ENV_PREFIX}{key}")
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _pick_first(*candidates: object) -> object:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


__all__ = [
    "CONFIG_ENV",
    "CONFIG_FILENAME",
    "ENV_PREFIX",
    "ConfigOverrides",
    "ExportConfig",
    "ExportConfigError",
    "LoadResult",
    "load_config",
]
