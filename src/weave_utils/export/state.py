"""Per-(document, format) lifecycle tracking for export runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping, Union


class State(Enum):
    """Lifecycle state of one work item."""

    WAITING = "waiting"
    EXECUTING = "executing"
    TANGLING = "tangling"
    STARTED = "started"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def in_progress(self) -> bool:
        return self in _IN_PROGRESS


_TERMINAL = frozenset({State.COMPLETED, State.ERROR})
_IN_PROGRESS = frozenset({State.EXECUTING, State.TANGLING, State.STARTED})

# waiting may jump straight to a terminal state when a format is skipped
# (clean mode, missing capability, synchronous conversions).
TRANSITIONS: Mapping[State, frozenset[State]] = MappingProxyType(
    {
        State.WAITING: frozenset(
            {
                State.EXECUTING,
                State.TANGLING,
                State.STARTED,
                State.COMPLETED,
                State.ERROR,
            }
        ),
        State.EXECUTING: frozenset(
            {State.STARTED, State.COMPLETED, State.ERROR}
        ),
        State.TANGLING: frozenset({State.COMPLETED, State.ERROR}),
        State.STARTED: frozenset({State.COMPLETED, State.ERROR}),
        State.COMPLETED: frozenset(),
        State.ERROR: frozenset(),
    }
)


class SchedulerInvariantError(RuntimeError):
    """A scheduler bug: the run cannot continue safely."""


class UnknownWorkItemError(SchedulerInvariantError):
    """State was set for a (document, format) pair that was never submitted."""


class InvalidTransitionError(SchedulerInvariantError):
    """A state change does not follow the lifecycle graph."""


@dataclass(frozen=True)
class WorkItem:
    """One (document, format) conversion obligation."""

    document: Path
    format: str

    def __str__(self) -> str:
        return f"{self.document.name}:{self.format}"


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time, read-only copy of the state table."""

    documents: tuple[Path, ...]
    columns: tuple[str, ...]
    cells: Mapping[Path, Mapping[str, State]]

    def state_of(self, document: Path, format_id: str) -> State:
        return self.cells[document][format_id]

    def items(self) -> Iterator[tuple[WorkItem, State]]:
        """Yield every submitted pair in submission order."""
        for document in self.documents:
            for format_id, state in self.cells[document].items():
                yield WorkItem(document, format_id), state

    @property
    def finished(self) -> bool:
        return all(state.is_terminal for _, state in self.items())

    def count(self, state: State) -> int:
        return sum(1 for _, current in self.items() if current is state)


Listener = Callable[[StateSnapshot], None]


class StateTracker:
    """Authoritative state table; every update goes through :meth:`set_state`.

    Updates are serialized with a lock so the process supervisor and the main
    processing path can both report transitions. Listeners run after the lock
    is released and receive a snapshot, never the live table.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._table: dict[Path, dict[str, State]] = {}
        self._columns: list[str] = []
        self._listeners: list[Listener] = []

    def submit(self, document: Path, formats: Iterable[str]) -> list[WorkItem]:
        """Register ``document`` x ``formats`` in the ``waiting`` state."""

        items: list[WorkItem] = []
        with self._lock:
            row = self._table.setdefault(document, {})
            for format_id in formats:
                if format_id in row:
                    raise SchedulerInvariantError(
                        f"{document}:{format_id} submitted twice."
                    )
                row[format_id] = State.WAITING
                if format_id not in self._columns:
                    self._columns.append(format_id)
                items.append(WorkItem(document, format_id))
        return items

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def set_state(
        self,
        document: Path,
        formats: Union[str, Iterable[str]],
        new_state: State,
    ) -> None:
        """Move the given pairs of ``document`` to ``new_state``.

        All pairs are validated before any is changed, so a rejected update
        leaves the table untouched. Setting the current non-terminal state
        again is a no-op.
        """

        targets = (formats,) if isinstance(formats, str) else tuple(formats)
        with self._lock:
            row = self._table.get(document)
            changes: list[str] = []
            for format_id in targets:
                if row is None or format_id not in row:
                    raise UnknownWorkItemError(
                        f"No work item submitted for {document}:{format_id}."
                    )
                current = row[format_id]
                if current is new_state and not current.is_terminal:
                    continue
                if new_state not in TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"{document.name}:{format_id} cannot move from "
                        f"{current.value} to {new_state.value}."
                    )
                changes.append(format_id)
            for format_id in changes:
                row[format_id] = new_state  # type: ignore[index]
            snapshot = self._snapshot_locked() if changes else None

        if snapshot is not None:
            for listener in self._listeners:
                listener(snapshot)

    def state_of(self, item: WorkItem) -> State:
        with self._lock:
            try:
                return self._table[item.document][item.format]
            except KeyError as exc:
                raise UnknownWorkItemError(
                    f"No work item submitted for {item}."
                ) from exc

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def is_finished(self) -> bool:
        return self.snapshot().finished

    def pending(self) -> list[WorkItem]:
        return [
            item
            for item, state in self.snapshot().items()
            if not state.is_terminal
        ]

    def failed(self) -> list[WorkItem]:
        return [
            item
            for item, state in self.snapshot().items()
            if state is State.ERROR
        ]

    def _snapshot_locked(self) -> StateSnapshot:
        cells = {
            document: MappingProxyType(dict(row))
            for document, row in self._table.items()
        }
        return StateSnapshot(
            documents=tuple(self._table),
            columns=tuple(self._columns),
            cells=MappingProxyType(cells),
        )


__all__ = [
    "State",
    "TRANSITIONS",
    "WorkItem",
    "StateSnapshot",
    "StateTracker",
    "SchedulerInvariantError",
    "UnknownWorkItemError",
    "InvalidTransitionError",
]
