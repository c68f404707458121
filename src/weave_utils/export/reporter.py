"""Live status table for export runs."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .state import State, StateSnapshot

SPINNER_FRAMES: tuple[str, ...] = tuple("⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏")

_FIXED: dict[State, tuple[str, str]] = {
    State.WAITING: ("·", "dim"),
    State.COMPLETED: ("✓", "green"),
    State.ERROR: ("✗", "bold red"),
}
_ANIMATED_STYLE: dict[State, str] = {
    State.EXECUTING: "yellow",
    State.TANGLING: "magenta",
    State.STARTED: "cyan",
}


class StatusReporter:
    """Render the state table; in-progress cells show a spinner frame.

    The frame advances once per :meth:`render` call, so two renders of the
    same snapshot differ only in their spinner characters.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self._console = console or Console(stderr=True)
        self._enabled = enabled
        self._frame = 0
        self._live: Optional[Live] = None
        self.renders = 0

    @property
    def console(self) -> Console:
        return self._console

    def render(self, snapshot: StateSnapshot) -> Table:
        spinner = SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)]
        self._frame += 1
        self.renders += 1

        done = sum(1 for _, state in snapshot.items() if state.is_terminal)
        total = sum(1 for _ in snapshot.items())
        failed = snapshot.count(State.ERROR)
        caption = f"{done}/{total} done"
        if failed:
            caption += f", {failed} failed"

        table = Table(box=box.SIMPLE_HEAD, caption=caption)
        table.add_column("document", no_wrap=True)
        for column in snapshot.columns:
            table.add_column(column, justify="center")
        for document in snapshot.documents:
            row = snapshot.cells[document]
            cells = [Text(_label(document))]
            for column in snapshot.columns:
                state = row.get(column)
                cells.append(_cell(state, spinner))
            table.add_row(*cells)
        return table

    def show(self, snapshot: StateSnapshot) -> None:
        """Render ``snapshot`` onto the live display."""

        if not self._enabled:
            return
        table = self.render(snapshot)
        if self._live is None:
            self._live = Live(
                table,
                console=self._console,
                auto_refresh=False,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )
            self._live.start(refresh=True)
        else:
            self._live.update(table, refresh=True)

    def close(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None


def _cell(state: Optional[State], spinner: str) -> Text:
    if state is None:
        return Text("")
    if state in _ANIMATED_STYLE:
        return Text(spinner, style=_ANIMATED_STYLE[state])
    symbol, style = _FIXED[state]
    return Text(symbol, style=style)


def _label(document: Path) -> str:
    try:
        return str(document.relative_to(Path.cwd()))
    except ValueError:
        return str(document)


__all__ = ["SPINNER_FRAMES", "StatusReporter"]
