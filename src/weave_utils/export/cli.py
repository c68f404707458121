"""CLI entry point for executing, tangling and exporting documents."""

from __future__ import annotations

import argparse
import importlib
import sys
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from rich.console import Console

from weave_utils.core import config_templates
from weave_utils.core import workspace as workspace_mod
from weave_utils.core.config_templates import ConfigTemplateError
from weave_utils.core.files import iter_documents
from weave_utils.core.logging import configure_logger
from weave_utils.core.workspace import WorkspaceError

from .config import (
    CONFIG_FILENAME,
    ConfigOverrides,
    ExportConfig,
    ExportConfigError,
    load_config,
)
from .formats import FormatRegistry, UnknownFormatError, default_specs
from .invoker import ExportDependencies
from .reporter import StatusReporter
from .scheduler import Mode, RunOptions, RunResult, Scheduler
from .state import SchedulerInvariantError

EXIT_FATAL = 2


class DependencyError(RuntimeError):
    """Raised when the document backends cannot be imported."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="weave export",
        description=(
            "Execute embedded code, tangle source files and export Markdown "
            "documents to one or more formats."
        ),
        epilog=(
            "Run `weave export config init` to scaffold the default "
            "export.toml template."
        ),
    )
    parser.add_argument(
        "paths",
        nargs="+",
        type=Path,
        help="Documents or directories of documents to process.",
    )
    parser.add_argument(
        "--formats",
        nargs="+",
        help="Formats to export (html, txt, md, pdf, docx, latex).",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        help="Maximum number of external converters running at once.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--sync",
        action="store_true",
        help="Process one conversion at a time, waiting on each tool.",
    )
    mode.add_argument(
        "--async",
        dest="asynchronous",
        action="store_true",
        help="Run external converters in the background.",
    )
    parser.add_argument(
        "--stdout",
        action="store_true",
        help="Write outputs to standard output instead of files.",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Remove previously exported (and tangled) files instead.",
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Run `exec` code blocks and write their output back.",
    )
    parser.add_argument(
        "--tangle",
        action="store_true",
        help="Write `file=` code blocks out to their target files.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Directory for exported files (defaults to beside each input).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=(
            "Path to a TOML config file (defaults to the workspace config "
            "directory)."
        ),
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        help="Override the workspace root used for config and logs.",
    )
    parser.add_argument(
        "--log-level",
        help="Set the logging level for the run (defaults to INFO).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Mirror log records on stderr.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Hide the live status table.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args_list = list(argv) if argv is not None else list(sys.argv[1:])

    if args_list[:1] == ["config"]:
        return _handle_config(args_list[1:])

    parser = _build_parser()
    args = parser.parse_args(args_list)

    if args.clean and (args.stdout or args.execute):
        parser.error("--clean cannot be combined with --stdout or --execute.")

    load_dotenv()
    overrides = ConfigOverrides(
        formats=args.formats,
        output_dir=args.output_dir,
        concurrency=args.jobs,
        mode=_mode_from_args(args),
        log_level=args.log_level,
    )
    try:
        load_result = load_config(
            config_path=args.config,
            overrides=overrides,
            workspace_path=args.workspace,
        )
    except ExportConfigError as exc:
        parser.error(str(exc))
    config = load_result.config

    try:
        registry = FormatRegistry(default_specs()).with_commands(
            config.commands
        )
        registry.resolve(config.formats)
    except UnknownFormatError as exc:
        parser.error(str(exc))

    try:
        documents = list(iter_documents(args.paths, config.extensions))
    except FileNotFoundError as exc:
        parser.error(str(exc))
    if not documents:
        parser.error("No documents found in the given paths.")

    try:
        dependencies = _build_dependencies()
    except DependencyError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1

    logger, log_path = configure_logger(
        "weave_utils.export",
        log_dir=load_result.layout.path_for("logs"),
        level=config.log_level,
        verbose=args.verbose,
    )
    logger.debug(
        "export CLI invoked",
        extra={"config_path": load_result.config_path},
    )

    scheduler = Scheduler(
        registry=registry,
        dependencies=dependencies,
        logger=logger,
        reporter=StatusReporter(
            Console(stderr=True), enabled=not args.quiet
        ),
    )
    options = _run_options(config, args)
    try:
        scheduler.submit(documents, config.formats, options)
        result = scheduler.run()
    except SchedulerInvariantError as exc:
        logger.exception("Export run aborted")
        sys.stderr.write(f"Export run aborted: {exc}\n")
        return EXIT_FATAL

    if result.error_report:
        sys.stderr.write("Errors:\n")
        sys.stderr.write(result.error_report)

    summary_stream = sys.stderr if options.stdout_redirect else sys.stdout
    _print_summary(result, log_path, summary_stream)
    return result.exit_code


def _build_dependencies() -> ExportDependencies:
    """Return the default document operation seams."""
    try:
        documents = importlib.import_module("weave_utils.export.documents")
    except ImportError as exc:
        package = (getattr(exc, "name", None) or "unknown").split(".", 1)[0]
        raise DependencyError(_missing_dependency_message(package)) from exc
    return documents.default_dependencies()


def _missing_dependency_message(package: str) -> str:
    return (
        f"Dependency '{package}' is required to process documents. "
        'Reinstall with `pip install "weave-utils"`.'
    )


def _mode_from_args(args: argparse.Namespace) -> Mode | None:
    if args.sync:
        return Mode.SYNC
    if args.asynchronous:
        return Mode.ASYNC
    return None


def _run_options(config: ExportConfig, args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        concurrency_limit=config.concurrency,
        mode=config.mode,
        stdout_redirect=args.stdout,
        clean_mode=args.clean,
        execute=args.execute,
        tangle=args.tangle,
        output_dir=config.output_dir,
        poll_interval=config.poll_interval,
        status_interval=config.status_interval,
    )


def _print_summary(result: RunResult, log_path: Path, stream) -> None:
    lines = [
        "export summary:",
        "  completed: {0}".format(result.completed_count),
        "  failed:    {0}".format(result.failed_count),
        "  processes: {0} (peak {1})".format(
            result.launched, result.peak_running
        ),
        "  log file:  {0}".format(log_path),
    ]
    stream.write("\n".join(str(line) for line in lines) + "\n")


def _handle_config(argv: Sequence[str]) -> int:
    parser = _build_config_parser()
    args = parser.parse_args(argv)

    return _handle_config_init(args)


def _build_config_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="weave export config",
        description="Manage configuration files for the export command.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init",
        help="Write the default export.toml template.",
    )
    init_parser.add_argument(
        "--path",
        type=Path,
        help=(
            "Destination for the config TOML (defaults to the workspace "
            "config directory)."
        ),
    )
    init_parser.add_argument(
        "--workspace",
        type=Path,
        help=(
            "Workspace root override used when resolving the default config "
            "path."
        ),
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the destination if a config already exists.",
    )
    return parser


def _handle_config_init(args: argparse.Namespace) -> int:
    try:
        target = _resolve_config_target(args)
    except WorkspaceError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1

    template = config_templates.get_template("export")
    try:
        written = template.write(target, overwrite=args.force)
    except ConfigTemplateError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1

    sys.stdout.write(f"Wrote export config to {written}\n")
    return 0


def _resolve_config_target(args: argparse.Namespace) -> Path:
    if args.path is not None:
        candidate = args.path.expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate

    layout = workspace_mod.ensure_workspace(path=args.workspace)
    return layout.path_for("config") / CONFIG_FILENAME


if __name__ == "__main__":  # pragma: no cover - module CLI guard
    raise SystemExit(main())
