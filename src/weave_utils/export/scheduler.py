"""Scheduler driving execute/tangle/export work across documents."""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, TextIO

from .errors import (
    EXEC_STAGE,
    TANGLE_STAGE,
    EmbeddedExecutionFault,
    ErrorAggregator,
    ExportError,
    TangleFault,
)
from .formats import TANGLE_FORMAT, FormatRegistry
from .invoker import (
    STDOUT,
    ConverterInvoker,
    ExportDependencies,
    OutputRedirects,
    RunningProcess,
    Target,
)
from .jobs import AdmissionController, JobQueue
from .reporter import StatusReporter
from .state import (
    SchedulerInvariantError,
    State,
    StateSnapshot,
    StateTracker,
    WorkItem,
)
from .supervisor import DEFAULT_POLL_INTERVAL, ProcessSupervisor


class Mode(Enum):
    """How external conversions are scheduled."""

    AUTO = "auto"
    SYNC = "sync"
    ASYNC = "async"

    @classmethod
    def from_value(cls, value: str) -> "Mode":
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        expected = ", ".join(member.value for member in cls)
        raise ValueError(
            f"Unknown mode '{value}'. Expected one of: {expected}."
        )


@dataclass(frozen=True)
class RunOptions:
    concurrency_limit: int = 4
    mode: Mode = Mode.AUTO
    stdout_redirect: bool = False
    clean_mode: bool = False
    execute: bool = False
    tangle: bool = False
    output_dir: Optional[Path] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    status_interval: float = 0.1


@dataclass(frozen=True)
class RunResult:
    """Aggregate outcome of :meth:`Scheduler.run`."""

    succeeded: bool
    error_report: str
    states: StateSnapshot
    launched: int
    peak_running: int

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    @property
    def completed_count(self) -> int:
        return self.states.count(State.COMPLETED)

    @property
    def failed_count(self) -> int:
        return self.states.count(State.ERROR)


class Scheduler:
    """Own the state table, error log and running set for one run.

    Call :meth:`submit` once, then :meth:`run`. In-process steps always run
    on the calling thread in submission order; external conversions either
    block in turn (synchronous mode) or go through the job queue and the
    process supervisor (asynchronous mode).
    """

    def __init__(
        self,
        *,
        registry: FormatRegistry,
        dependencies: ExportDependencies,
        logger: logging.Logger,
        reporter: Optional[StatusReporter] = None,
        stream: Optional[TextIO] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._deps = dependencies
        self._logger = logger
        self._reporter = reporter or StatusReporter(enabled=False)
        self._stream = stream
        self._sleep = sleep
        self._clock = clock

        self.tracker = StateTracker()
        self.errors = ErrorAggregator()
        self.redirects = OutputRedirects()
        self.queue = JobQueue()

        self._options: Optional[RunOptions] = None
        self._documents: tuple[Path, ...] = ()
        self._formats: tuple[str, ...] = ()
        self._asynchronous = False
        self._last_render: Optional[float] = None
        self.invoker: Optional[ConverterInvoker] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self.admission: Optional[AdmissionController] = None

    @property
    def asynchronous(self) -> bool:
        return self._asynchronous

    def submit(
        self,
        documents: Sequence[Path],
        formats: Sequence[str],
        options: RunOptions,
    ) -> list[WorkItem]:
        """Register every document x format pair as ``waiting``."""

        if self._options is not None:
            raise SchedulerInvariantError("Scheduler.submit called twice.")
        self._registry.resolve(formats)

        self._options = options
        self._documents = tuple(dict.fromkeys(documents))
        self._formats = tuple(dict.fromkeys(formats))
        columns = ((TANGLE_FORMAT,) if options.tangle else ()) + self._formats

        items: list[WorkItem] = []
        for document in self._documents:
            items.extend(self.tracker.submit(document, columns))

        self._asynchronous = options.mode is Mode.ASYNC or (
            options.mode is Mode.AUTO
            and not (len(self._documents) == 1 and len(columns) == 1)
        )
        self._build_components(options)

        self._logger.info(
            "Submitted export run",
            extra={
                "document_count": len(self._documents),
                "formats": list(columns),
                "asynchronous": self._asynchronous,
                "concurrency": options.concurrency_limit,
            },
        )
        return items

    def _build_components(self, options: RunOptions) -> None:
        self.invoker = ConverterInvoker(
            tracker=self.tracker,
            errors=self.errors,
            registry=self._registry,
            dependencies=self._deps,
            redirects=self.redirects,
            asynchronous=self._asynchronous,
            logger=self._logger,
        )
        self.supervisor = ProcessSupervisor(
            tracker=self.tracker,
            errors=self.errors,
            concurrency_limit=options.concurrency_limit,
            logger=self._logger,
            poll_interval=options.poll_interval,
            sleep=self._sleep,
        )
        self.admission = AdmissionController(
            self.queue,
            self.supervisor,
            concurrency_limit=options.concurrency_limit,
            logger=self._logger,
        )
        self.supervisor.on_exit(self.admission.admit)

    def run(self) -> RunResult:
        """Process every submitted pair to a terminal state."""

        options = self._options
        supervisor = self.supervisor
        admission = self.admission
        if options is None or supervisor is None or admission is None:
            raise SchedulerInvariantError(
                "Scheduler.run called before submit."
            )

        reporter = self._reporter
        if not self._asynchronous:
            self.tracker.subscribe(reporter.show)
        reporter.show(self.tracker.snapshot())

        try:
            for document in self._documents:
                self._process_document(document, options)
                if self._asynchronous:
                    supervisor.poll()
                    admission.admit()
                    self._tick()

            if self._asynchronous:
                admission.admit()
                supervisor.drain(
                    tick=self._tick, pending=lambda: bool(self.queue)
                )

            snapshot = self.tracker.snapshot()
            if not snapshot.finished:
                raise SchedulerInvariantError(
                    "Run ended with work items in a non-terminal state."
                )
            reporter.show(snapshot)
            reporter.close()
            if options.stdout_redirect:
                order = [item for item, _ in snapshot.items()]
                self.redirects.emit(self._stream or sys.stdout, order)
        except BaseException:
            supervisor.terminate_all()
            raise
        finally:
            reporter.close()
            self.redirects.cleanup()

        report = self.errors.report(
            self._documents,
            (EXEC_STAGE, TANGLE_STAGE, *self._formats),
        )
        result = RunResult(
            succeeded=not self.errors.has_errors and not self.tracker.failed(),
            error_report=report,
            states=snapshot,
            launched=supervisor.launched,
            peak_running=supervisor.peak,
        )
        self._logger.info(
            "Completed export run",
            extra={
                "completed": result.completed_count,
                "failed": result.failed_count,
                "processes_launched": result.launched,
                "peak_running": result.peak_running,
            },
        )
        return result

    def _process_document(self, document: Path, options: RunOptions) -> None:
        if options.clean_mode:
            self._clean(document, options)
            return

        if options.execute:
            self.tracker.set_state(
                document, self._executing_formats(), State.EXECUTING
            )
            self._execute(document)
        if options.tangle:
            self._tangle(document)

        specs = self._registry.resolve(self._formats)
        # In-process formats finish before this document's external jobs are
        # queued or launched.
        for spec in specs:
            if not spec.external_tool_required:
                self._convert(WorkItem(document, spec.id), options)
        for spec in specs:
            if spec.external_tool_required:
                self._convert(WorkItem(document, spec.id), options)

    def _executing_formats(self) -> tuple[str, ...]:
        # Queued external jobs stay waiting until admission launches them.
        if not self._asynchronous:
            return self._formats
        return tuple(
            spec.id
            for spec in self._registry.resolve(self._formats)
            if not spec.external_tool_required
        )

    def _convert(self, item: WorkItem, options: RunOptions) -> None:
        invoker = self.invoker
        supervisor = self.supervisor
        assert invoker is not None and supervisor is not None

        target = self._target_for(item, options)
        spec = self._registry.get(item.format)
        if self._asynchronous and spec.external_tool_required:
            self.queue.enqueue(item, lambda: self._start(item, target))
            return

        outcome = invoker.invoke(item, target)
        if outcome.process is not None:
            supervisor.wait(outcome.process)

    def _start(
        self, item: WorkItem, target: Target
    ) -> Optional[RunningProcess]:
        assert self.invoker is not None
        return self.invoker.invoke(item, target).process

    def _target_for(self, item: WorkItem, options: RunOptions) -> Target:
        if options.stdout_redirect:
            return STDOUT
        spec = self._registry.get(item.format)
        return spec.output_path(item.document, options.output_dir)

    def _execute(self, document: Path) -> None:
        failures: tuple[str, ...]
        try:
            report = self._deps.execute_embedded(document)
        except EmbeddedExecutionFault as exc:
            failures = (str(exc),)
        except Exception as exc:
            failures = (f"{type(exc).__name__}: {exc}",)
        else:
            failures = report.failures
        for message in failures:
            self.errors.record(document, EXEC_STAGE, message)
        if failures:
            self._logger.error(
                "Embedded code failed",
                extra={"document": document, "failures": list(failures)},
            )

    def _tangle(self, document: Path) -> None:
        self.tracker.set_state(document, TANGLE_FORMAT, State.TANGLING)
        try:
            written = self._deps.tangle(document)
        except Exception as exc:
            error = (
                exc if isinstance(exc, ExportError) else TangleFault(str(exc))
            )
            self.errors.record(document, TANGLE_STAGE, str(error))
            self.tracker.set_state(document, TANGLE_FORMAT, State.ERROR)
            self._logger.error(
                "Tangle failed",
                extra={"document": document, "reason": str(error)},
            )
            return
        self.tracker.set_state(document, TANGLE_FORMAT, State.COMPLETED)
        self._logger.info(
            "Tangled document",
            extra={"document": document, "files": list(written)},
        )

    def _clean(self, document: Path, options: RunOptions) -> None:
        if options.tangle:
            try:
                targets = list(self._deps.tangle_targets(document))
                for target in targets:
                    target.unlink(missing_ok=True)
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, ExportError)
                    else TangleFault(f"{type(exc).__name__}: {exc}")
                )
                self.errors.record(document, TANGLE_STAGE, str(error))
                self.tracker.set_state(document, TANGLE_FORMAT, State.ERROR)
                self._logger.error(
                    "Clean failed",
                    extra={"document": document, "reason": str(error)},
                )
            else:
                self.tracker.set_state(
                    document, TANGLE_FORMAT, State.COMPLETED
                )

        for format_id in self._formats:
            spec = self._registry.get(format_id)
            output = spec.output_path(document, options.output_dir)
            try:
                output.unlink(missing_ok=True)
            except OSError as exc:
                self.errors.record(document, format_id, str(exc))
                self.tracker.set_state(document, format_id, State.ERROR)
                continue
            self.tracker.set_state(document, format_id, State.COMPLETED)
            self._logger.debug(
                "Removed output",
                extra={"document": document, "format": format_id},
            )

    def _tick(self) -> None:
        now = self._clock()
        interval = self._options.status_interval if self._options else 0.0
        if self._last_render is None or now - self._last_render >= interval:
            self._last_render = now
            self._reporter.show(self.tracker.snapshot())


__all__ = ["Mode", "RunOptions", "RunResult", "Scheduler"]
