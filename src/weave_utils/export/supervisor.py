"""Supervision of running external converter processes."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .errors import ErrorAggregator, ExportError, ExternalToolFailure
from .invoker import RunningProcess, run_post_action
from .state import SchedulerInvariantError, State, StateTracker

DEFAULT_POLL_INTERVAL = 0.1


class ProcessSupervisor:
    """Own the running set and the on-exit state transitions.

    Exits are observed by polling. Each exit frees a slot, moves the work
    item to a terminal state and calls the ``on_exit`` hooks (the scheduler
    wires admission there).
    """

    def __init__(
        self,
        *,
        tracker: StateTracker,
        errors: ErrorAggregator,
        concurrency_limit: int,
        logger: logging.Logger,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._tracker = tracker
        self._errors = errors
        self._limit = concurrency_limit
        self._logger = logger
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._running: list[RunningProcess] = []
        self._hooks: list[Callable[[], object]] = []
        self.launched = 0
        self.peak = 0

    @property
    def running_count(self) -> int:
        return len(self._running)

    def running(self) -> tuple[RunningProcess, ...]:
        return tuple(self._running)

    def on_exit(self, hook: Callable[[], object]) -> None:
        self._hooks.append(hook)

    def track(self, process: RunningProcess) -> None:
        if len(self._running) >= self._limit:
            raise SchedulerInvariantError(
                f"Cannot track {process.item}: {self._limit} processes "
                "already running."
            )
        self._running.append(process)
        self.launched += 1
        self.peak = max(self.peak, len(self._running))

    def poll(self) -> int:
        """Reap every exited process; return how many exited."""

        exited = [p for p in self._running if p.popen.poll() is not None]
        for process in exited:
            self._running.remove(process)
            self._finish(process, process.popen.returncode)
            self._notify()
        return len(exited)

    def wait(self, process: RunningProcess) -> State:
        """Block until ``process`` exits and report it (synchronous mode)."""

        self.launched += 1
        self.peak = max(self.peak, 1)
        returncode = process.popen.wait()
        return self._finish(process, returncode)

    def drain(
        self,
        *,
        tick: Callable[[], object],
        pending: Callable[[], bool] = lambda: False,
    ) -> None:
        """Poll until nothing runs and nothing is queued.

        ``tick`` runs once per iteration (the status display hangs off it).
        """

        while self._running or pending():
            if not self._running:
                self._notify()
                if not self._running and pending():
                    raise SchedulerInvariantError(
                        "Queued jobs remain but none could be admitted."
                    )
            self.poll()
            tick()
            if self._running:
                self._sleep(self._poll_interval)

    def terminate_all(self) -> None:
        """Kill and reap everything still running."""

        while self._running:
            process = self._running.pop()
            try:
                process.popen.kill()
                process.popen.wait()
            finally:
                process.close()
            self._logger.warning(
                "Terminated external converter",
                extra={
                    "document": process.item.document,
                    "format": process.item.format,
                },
            )

    def _notify(self) -> None:
        for hook in self._hooks:
            hook()

    def _finish(self, process: RunningProcess, returncode: int) -> State:
        try:
            output = process.read_log()
        finally:
            process.close()

        item = process.item
        self._logger.info(
            "External converter exited",
            extra={
                "document": item.document,
                "format": item.format,
                "returncode": returncode,
            },
        )

        error: ExportError | None
        if returncode == 0:
            error = run_post_action(process.spec, process.output)
        else:
            error = ExternalToolFailure(
                f"{process.command_line()} (exit status {returncode})\n"
                f"{output}",
                stage=process.spec.id,
            )

        if error is None:
            self._tracker.set_state(
                item.document, item.format, State.COMPLETED
            )
            return State.COMPLETED

        self._errors.record_error(item.document, error)
        self._tracker.set_state(item.document, item.format, State.ERROR)
        return State.ERROR


__all__ = ["DEFAULT_POLL_INTERVAL", "ProcessSupervisor"]
