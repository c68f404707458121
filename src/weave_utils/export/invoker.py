"""Uniform entry point for one (document, format) conversion."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import (
    IO,
    TYPE_CHECKING,
    Callable,
    Optional,
    Sequence,
    TextIO,
    Union,
)

from .errors import (
    CapabilityUnavailable,
    ConversionFault,
    ErrorAggregator,
    ExportError,
    ExternalToolFailure,
)
from .formats import ExportSpec, FormatRegistry
from .state import State, StateTracker, WorkItem

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .documents import ExecutionReport

STDOUT = "-"

Target = Union[Path, str]


@dataclass(frozen=True)
class ExportDependencies:
    """Callable seams for the per-document work the scheduler drives."""

    convert_in_process: Callable[[Path, ExportSpec, Path], None]
    launch_external: Callable[..., subprocess.Popen]
    build_command: Callable[[ExportSpec, Path, Path], Sequence[str]]
    execute_embedded: Callable[[Path], "ExecutionReport"]
    tangle: Callable[[Path], Sequence[Path]]
    tangle_targets: Callable[[Path], Sequence[Path]]


@dataclass
class RunningProcess:
    """A launched external converter and the work item it belongs to."""

    item: WorkItem
    spec: ExportSpec
    popen: subprocess.Popen
    command: tuple[str, ...]
    log: IO[bytes]
    output: Path

    def command_line(self) -> str:
        return subprocess.list2cmdline(self.command)

    def read_log(self) -> str:
        self.log.seek(0)
        return self.log.read().decode("utf-8", errors="replace")

    def close(self) -> None:
        self.log.close()


@dataclass(frozen=True)
class Outcome:
    item: WorkItem
    state: State
    process: Optional[RunningProcess] = None
    error: Optional[ExportError] = None


class OutputRedirects:
    """Private temp files standing in for outputs sent to standard output."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: dict[WorkItem, Path] = {}

    def allocate(self, item: WorkItem, suffix: str) -> Path:
        """Return a fresh file inside a private directory for ``item``.

        Converters and post-actions may leave byproducts next to the output;
        the whole directory goes away with it.
        """

        directory = Path(
            tempfile.mkdtemp(prefix=f"weave-{item.document.stem}-")
        )
        path = directory / f"{item.document.stem}{suffix}"
        path.touch()
        with self._lock:
            self._files[item] = path
        return path

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)

    def paths(self) -> tuple[Path, ...]:
        with self._lock:
            return tuple(self._files.values())

    def emit(self, stream: TextIO, order: Sequence[WorkItem]) -> int:
        """Write each redirected output to ``stream`` in ``order``.

        Each private directory is removed right after its file is emitted.
        Returns the number of files written.
        """

        written = 0
        for item in order:
            with self._lock:
                path = self._files.pop(item, None)
            if path is None:
                continue
            try:
                if path.exists():
                    stream.write(
                        path.read_text(encoding="utf-8", errors="replace")
                    )
                    written += 1
            finally:
                _discard(path)
        stream.flush()
        return written

    def cleanup(self) -> None:
        with self._lock:
            leftovers = list(self._files.values())
            self._files.clear()
        for path in leftovers:
            _discard(path)


def _discard(path: Path) -> None:
    shutil.rmtree(path.parent, ignore_errors=True)


def run_post_action(spec: ExportSpec, output: Path) -> Optional[ExportError]:
    """Run ``spec.post_action`` on ``output``; return the failure, if any."""

    if spec.post_action is None:
        return None
    try:
        spec.post_action(output)
    except ExportError as exc:
        exc.stage = spec.id
        return exc
    except Exception as exc:
        return ConversionFault(
            f"{spec.id} post-action failed: {exc}", stage=spec.id
        )
    return None


class ConverterInvoker:
    """Run in-process conversions and launch external ones.

    In-process conversions finish inside :meth:`invoke`. External tools are
    started and handed back as a :class:`RunningProcess`; the process
    supervisor reports their completion.
    """

    def __init__(
        self,
        *,
        tracker: StateTracker,
        errors: ErrorAggregator,
        registry: FormatRegistry,
        dependencies: ExportDependencies,
        redirects: OutputRedirects,
        asynchronous: bool,
        logger: logging.Logger,
    ) -> None:
        self._tracker = tracker
        self._errors = errors
        self._registry = registry
        self._deps = dependencies
        self._redirects = redirects
        self._asynchronous = asynchronous
        self._logger = logger
        self.calls = 0

    def resolve_target(self, item: WorkItem, target: Target) -> Path:
        spec = self._registry.get(item.format)
        if isinstance(target, str) and target == STDOUT:
            return self._redirects.allocate(item, spec.output_extension)
        return Path(target)

    def invoke(self, item: WorkItem, target: Target) -> Outcome:
        self.calls += 1
        spec = self._registry.get(item.format)

        capability = self._registry.capability(spec.id)
        if not capability.available:
            return self.fail(
                item,
                CapabilityUnavailable(
                    capability.reason or "backend unavailable", stage=spec.id
                ),
            )

        output = self.resolve_target(item, target)
        if spec.external_tool_required:
            return self._launch(item, spec, output)

        try:
            self._deps.convert_in_process(item.document, spec, output)
        except Exception as exc:
            return self.fail(item, ConversionFault(str(exc), stage=spec.id))
        return self.complete(item, spec, output)

    def complete(
        self, item: WorkItem, spec: ExportSpec, output: Path
    ) -> Outcome:
        failure = run_post_action(spec, output)
        if failure is not None:
            return self.fail(item, failure)
        self._tracker.set_state(item.document, item.format, State.COMPLETED)
        self._logger.info(
            "Export completed",
            extra={"document": item.document, "format": item.format},
        )
        return Outcome(item=item, state=State.COMPLETED)

    def fail(self, item: WorkItem, error: ExportError) -> Outcome:
        if not error.stage:
            error.stage = item.format
        self._errors.record_error(item.document, error)
        self._tracker.set_state(item.document, item.format, State.ERROR)
        self._logger.error(
            "Export failed",
            extra={
                "document": item.document,
                "format": item.format,
                "kind": type(error).__name__,
                "reason": str(error),
            },
        )
        return Outcome(item=item, state=State.ERROR, error=error)

    def _launch(
        self, item: WorkItem, spec: ExportSpec, output: Path
    ) -> Outcome:
        command = tuple(self._deps.build_command(spec, item.document, output))
        log = tempfile.TemporaryFile()
        try:
            popen = self._deps.launch_external(
                item.document, spec, output, log, command
            )
        except Exception as exc:
            log.close()
            return self.fail(
                item,
                ExternalToolFailure(
                    f"{subprocess.list2cmdline(command)}\n{exc}",
                    stage=spec.id,
                ),
            )

        process = RunningProcess(
            item=item,
            spec=spec,
            popen=popen,
            command=command,
            log=log,
            output=output,
        )
        if self._asynchronous:
            self._tracker.set_state(item.document, item.format, State.STARTED)
        self._logger.info(
            "Launched external converter",
            extra={
                "document": item.document,
                "format": item.format,
                "command": list(command),
                "pid": popen.pid,
            },
        )
        return Outcome(item=item, state=State.STARTED, process=process)


__all__ = [
    "STDOUT",
    "ConverterInvoker",
    "ExportDependencies",
    "Outcome",
    "OutputRedirects",
    "RunningProcess",
    "run_post_action",
]
