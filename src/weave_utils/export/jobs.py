"""FIFO job queue and concurrency-bounded admission."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Deque, Optional

from .state import WorkItem

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .invoker import RunningProcess
    from .supervisor import ProcessSupervisor

ReadyFn = Callable[[], Optional["RunningProcess"]]


@dataclass(frozen=True)
class Job:
    item: WorkItem
    ready: ReadyFn


class JobQueue:
    """Work items waiting for a free process slot, oldest first."""

    def __init__(self) -> None:
        self._jobs: Deque[Job] = deque()

    def enqueue(self, item: WorkItem, ready: ReadyFn) -> None:
        self._jobs.append(Job(item=item, ready=ready))

    def pop(self) -> Job:
        return self._jobs.popleft()

    def __len__(self) -> int:
        return len(self._jobs)

    def __bool__(self) -> bool:
        return bool(self._jobs)

    def pending(self) -> tuple[WorkItem, ...]:
        return tuple(job.item for job in self._jobs)


class AdmissionController:
    """Move queued jobs into the supervisor while slots are free.

    :meth:`admit` is the only path from the queue to a running process.
    A job whose ``ready`` callable returns ``None`` (it failed before a
    process existed) does not take a slot.
    """

    def __init__(
        self,
        queue: JobQueue,
        supervisor: "ProcessSupervisor",
        *,
        concurrency_limit: int,
        logger: logging.Logger,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be a positive integer.")
        self._queue = queue
        self._supervisor = supervisor
        self._limit = concurrency_limit
        self._logger = logger
        self.admitted: list[WorkItem] = []

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    def admit(self) -> int:
        """Admit jobs up to the concurrency limit; return how many started."""

        started = 0
        while self._queue and self._supervisor.running_count < self._limit:
            job = self._queue.pop()
            self.admitted.append(job.item)
            self._logger.debug(
                "Admitted job",
                extra={
                    "document": job.item.document,
                    "format": job.item.format,
                    "queued": len(self._queue),
                },
            )
            process = job.ready()
            if process is not None:
                self._supervisor.track(process)
                started += 1
        return started


__all__ = ["AdmissionController", "Job", "JobQueue", "ReadyFn"]
