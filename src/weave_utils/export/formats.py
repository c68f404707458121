"""Export format registry and backend capability checks."""

from __future__ import annotations

import importlib.util
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .errors import ConversionFault

TANGLE_FORMAT = "tangle"

PostAction = Callable[[Path], None]


@dataclass(frozen=True)
class ExportSpec:
    """Static description of one output format."""

    id: str
    backend: str
    output_extension: str
    external_tool_required: bool = False
    command: tuple[str, ...] = ()
    post_action: Optional[PostAction] = None
    requires: tuple[str, ...] = ()

    def output_path(self, document: Path, output_dir: Path | None) -> Path:
        name = f"{document.stem}{self.output_extension}"
        if output_dir is None:
            return document.with_name(name)
        return output_dir / name


@dataclass(frozen=True)
class Capability:
    """Whether a format's backend can run here, and why not if it cannot."""

    available: bool
    reason: Optional[str] = None


class UnknownFormatError(ValueError):
    """Raised when a requested format has no registered spec."""


def compile_latex(output: Path) -> None:
    """Compile a generated ``.tex`` file into PDF next to it."""

    command = ["pdflatex", "-interaction=nonstopmode", output.name]
    try:
        result = subprocess.run(
            command,
            cwd=output.parent,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ConversionFault(f"pdflatex could not start: {exc}") from exc
    if result.returncode != 0:
        raise ConversionFault(
            f"{' '.join(command)} exited with {result.returncode}\n"
            f"{result.stdout}{result.stderr}"
        )


_PANDOC = ("pandoc", "{input}", "-o", "{output}")
_RENDER_MODULES = ("markdown_it", "pygments", "jinja2")


def default_specs() -> tuple[ExportSpec, ...]:
    return (
        ExportSpec(
            id="html",
            backend="html",
            output_extension=".html",
            requires=_RENDER_MODULES,
        ),
        ExportSpec(
            id="txt",
            backend="text",
            output_extension=".txt",
            requires=("markdown_it",),
        ),
        ExportSpec(
            id="md",
            backend="markdown",
            output_extension=".woven.md",
        ),
        ExportSpec(
            id="pdf",
            backend="pandoc",
            output_extension=".pdf",
            external_tool_required=True,
            command=_PANDOC,
        ),
        ExportSpec(
            id="docx",
            backend="pandoc",
            output_extension=".docx",
            external_tool_required=True,
            command=_PANDOC,
        ),
        ExportSpec(
            id="latex",
            backend="pandoc",
            output_extension=".tex",
            external_tool_required=True,
            command=("pandoc", "{input}", "-s", "-o", "{output}"),
            post_action=compile_latex,
        ),
    )


class FormatRegistry:
    """``format id -> ExportSpec`` with a lazily cached capability check."""

    def __init__(
        self,
        specs: Iterable[ExportSpec],
        *,
        which: Callable[[str], Optional[str]] = shutil.which,
        module_available: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._specs = {spec.id: spec for spec in specs}
        self._which = which
        self._module_available = module_available or _module_available
        self._capabilities: dict[str, Capability] = {}

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._specs)

    def get(self, format_id: str) -> ExportSpec:
        try:
            return self._specs[format_id]
        except KeyError as exc:
            known = ", ".join(self._specs)
            raise UnknownFormatError(
                f"Unknown format '{format_id}'. Expected one of: {known}."
            ) from exc

    def resolve(self, format_ids: Sequence[str]) -> tuple[ExportSpec, ...]:
        return tuple(self.get(format_id) for format_id in format_ids)

    def with_commands(
        self, commands: Mapping[str, Sequence[str]]
    ) -> "FormatRegistry":
        """Return a registry whose external commands are overridden."""

        specs = []
        for spec in self._specs.values():
            override = commands.get(spec.id)
            if override is not None:
                if not spec.external_tool_required:
                    raise UnknownFormatError(
                        f"Format '{spec.id}' runs in-process and takes no "
                        "command."
                    )
                spec = replace(spec, command=tuple(override))
            specs.append(spec)
        unknown = set(commands) - set(self._specs)
        if unknown:
            raise UnknownFormatError(
                f"Commands configured for unknown formats: "
                f"{', '.join(sorted(unknown))}."
            )
        return FormatRegistry(
            specs,
            which=self._which,
            module_available=self._module_available,
        )

    def capability(self, format_id: str) -> Capability:
        if format_id not in self._capabilities:
            self._capabilities[format_id] = self._check(self.get(format_id))
        return self._capabilities[format_id]

    def _check(self, spec: ExportSpec) -> Capability:
        if spec.external_tool_required:
            if not spec.command:
                return Capability(
                    False, f"No command configured for the '{spec.id}' format."
                )
            tool = spec.command[0]
            if self._which(tool) is None and not Path(tool).is_file():
                return Capability(
                    False,
                    f"The '{spec.id}' format needs '{tool}' on PATH. Install "
                    "it or configure [commands] in export.toml.",
                )
            return Capability(True)
        for module in spec.requires:
            if not self._module_available(module):
                return Capability(
                    False,
                    f"Optional dependency '{module}' is required for the "
                    f"'{spec.id}' format. Install it with "
                    '`pip install "weave-utils"`.',
                )
        return Capability(True)


def _module_available(name: str) -> bool:
    return importlib.util.find_spec(name) is not None


__all__ = [
    "TANGLE_FORMAT",
    "ExportSpec",
    "Capability",
    "FormatRegistry",
    "UnknownFormatError",
    "compile_latex",
    "default_specs",
]
