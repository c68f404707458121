"""``weave`` command dispatcher.

Each subcommand lives in its own module exposing ``main(argv) -> int``;
this module only routes to it and normalizes the exit status.
"""

from __future__ import annotations

import inspect
import sys
from dataclasses import dataclass
from importlib import import_module, metadata
from typing import Callable, Mapping, Optional, Sequence

PROG = "weave"
DISTRIBUTION = "weave-utils"
EXIT_USAGE = 2


@dataclass(frozen=True)
class CommandSpec:
    """A subcommand and the module implementing it."""

    name: str
    summary: str
    module: str
    entry_point: str = "main"

    @property
    def prog(self) -> str:
        return f"{PROG} {self.name}"

    def run(self, argv: Sequence[str]) -> int:
        target = getattr(import_module(self.module), self.entry_point)
        return _invoke_main(target, self.prog, argv)


COMMAND_SPECS: Sequence[CommandSpec] = (
    CommandSpec(
        name="init",
        summary="Bootstrap the shared weave-utils workspace.",
        module="weave_utils.workspace.cli",
    ),
    CommandSpec(
        name="export",
        summary="Execute, tangle and export Markdown documents.",
        module="weave_utils.export.cli",
    ),
)

COMMANDS: Mapping[str, CommandSpec] = {
    spec.name: spec for spec in COMMAND_SPECS
}


def format_command_table() -> str:
    """Return the ``Available commands:`` block used by help and errors."""

    width = max((len(spec.name) for spec in COMMAND_SPECS), default=0)
    rows = [
        f"  {spec.name.ljust(width)}  {spec.summary}"
        for spec in COMMAND_SPECS
    ]
    return "\n".join(["Available commands:", *rows])


def format_usage() -> str:
    return (
        f"Usage: {PROG} <command> [args...]\n"
        f"Run `{PROG} list` for commands or `{PROG} help <name>` for "
        "details.\n\n" + format_command_table()
    )


def _out(text: str) -> None:
    sys.stdout.write(text + "\n")


def _err(text: str) -> None:
    sys.stderr.write(text + "\n")


def _unknown(name: str) -> int:
    _err(f"Unknown command '{name}'.")
    _err(format_command_table())
    return EXIT_USAGE


def _version() -> str:
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "unknown"


def _describe(name: str) -> int:
    spec = COMMANDS.get(name)
    if spec is None:
        return _unknown(name)
    _out(f"{spec.name}: {spec.summary}")
    _out(f"Run `{spec.prog} --help` for CLI-specific options.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        _out(format_usage())
        return EXIT_USAGE

    head, tail = args[0], args[1:]
    if head in ("-h", "--help") or (head == "help" and not tail):
        _out(format_usage())
        return 0
    if head == "help":
        return _describe(tail[0])
    if head in ("-V", "--version", "version"):
        _out(_version())
        return 0
    if head == "list":
        _out(format_command_table())
        return 0

    spec = COMMANDS.get(head)
    if spec is None:
        return _unknown(head)
    return spec.run(tail)


def _invoke_main(
    func: Callable[..., object], prog: str, argv: Sequence[str]
) -> int:
    """Call ``func`` with ``sys.argv`` pointing at ``prog``.

    Entry points that take no parameters read ``sys.argv`` themselves.
    ``SystemExit`` raised by argparse is turned back into a return code.
    """

    args = list(argv)
    saved = sys.argv
    sys.argv = [prog, *args]
    try:
        result = func(args) if _takes_positional(func) else func()
    except SystemExit as exc:
        return _exit_status(exc.code)
    finally:
        sys.argv = saved
    return result if isinstance(result, int) else 0


def _takes_positional(func: Callable[..., object]) -> bool:
    try:
        parameters = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = (
        inspect.Parameter.POSITIONAL_ONLY,
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
        inspect.Parameter.VAR_POSITIONAL,
    )
    return any(param.kind in positional for param in parameters)


def _exit_status(code: object) -> int:
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    _err(str(code))
    return 1


if __name__ == "__main__":  # pragma: no cover - manual invocation guard
    raise SystemExit(main())
