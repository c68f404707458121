"""Recorded export failures and the end-of-run error report."""

from __future__ import annotations

import threading
from collections import OrderedDict
from pathlib import Path
from typing import Iterable, Mapping, Sequence

EXEC_STAGE = "exec"
TANGLE_STAGE = "tangle"


class ExportError(RuntimeError):
    """A failure that is recorded against one stage of one document.

    These never abort sibling work items; the scheduler turns them into
    :class:`ErrorAggregator` entries.
    """

    stage: str = ""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class CapabilityUnavailable(ExportError):
    """An optional converter backend cannot be used in this environment."""


class EmbeddedExecutionFault(ExportError):
    stage = EXEC_STAGE


class TangleFault(ExportError):
    stage = TANGLE_STAGE


class ConversionFault(ExportError):
    """An in-process conversion raised."""


class ExternalToolFailure(ExportError):
    """An external converter could not start or exited non-zero."""


class ErrorAggregator:
    """Collect failures keyed by document and stage.

    Recording is thread-safe and append-only; :meth:`report` builds the
    grouped summary printed once at the end of a run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Path, dict[str, list[str]]] = {}

    def record(self, document: Path, stage: str, message: str) -> None:
        with self._lock:
            stages = self._entries.setdefault(document, {})
            stages.setdefault(stage, []).append(message.rstrip())

    def record_error(self, document: Path, error: ExportError) -> None:
        self.record(document, error.stage, str(error))

    @property
    def has_errors(self) -> bool:
        with self._lock:
            return bool(self._entries)

    def entries(self, document: Path) -> Mapping[str, tuple[str, ...]]:
        with self._lock:
            stages = self._entries.get(document, {})
            return {
                stage: tuple(messages) for stage, messages in stages.items()
            }

    def report(
        self,
        documents: Sequence[Path],
        stage_order: Sequence[str],
    ) -> str:
        """Return the grouped error summary, or ``""`` when nothing failed.

        Documents follow ``documents`` (submission order); any document that
        only has errors but was not listed is appended afterwards. Within a
        document identical messages are merged and their stages listed
        together, ordered by ``stage_order``. A message recorded more than
        once under the same stage is labelled with its count (``exec x2``).
        """

        with self._lock:
            snapshot = {
                document: {stage: list(msgs) for stage, msgs in stages.items()}
                for document, stages in self._entries.items()
            }
        if not snapshot:
            return ""

        ordered = [doc for doc in documents if doc in snapshot]
        ordered.extend(doc for doc in snapshot if doc not in ordered)

        rank = {stage: index for index, stage in enumerate(stage_order)}
        lines: list[str] = []
        for document in ordered:
            lines.append(str(document))
            for stages, message in _group(snapshot[document], rank):
                lines.extend(_format_group(stages, message))
        return "\n".join(lines) + "\n"


def _group(
    stages: Mapping[str, Iterable[str]], rank: Mapping[str, int]
) -> list[tuple[list[str], str]]:
    def stage_key(stage: str) -> tuple[int, str]:
        return (rank.get(stage, len(rank)), stage)

    groups: "OrderedDict[str, OrderedDict[str, int]]" = OrderedDict()
    for stage in sorted(stages, key=stage_key):
        for message in stages[stage]:
            counts = groups.setdefault(message, OrderedDict())
            counts[stage] = counts.get(stage, 0) + 1
    return [
        (
            [_stage_label(stage, count) for stage, count in counts.items()],
            message,
        )
        for message, counts in groups.items()
    ]


def _stage_label(stage: str, count: int) -> str:
    return stage if count == 1 else f"{stage} x{count}"


def _format_group(stages: Sequence[str], message: str) -> list[str]:
    first, *rest = message.splitlines() or [""]
    lines = [f"  [{', '.join(stages)}] {first}"]
    lines.extend(f"      {line}" for line in rest)
    return lines


__all__ = [
    "EXEC_STAGE",
    "TANGLE_STAGE",
    "ExportError",
    "CapabilityUnavailable",
    "EmbeddedExecutionFault",
    "TangleFault",
    "ConversionFault",
    "ExternalToolFailure",
    "ErrorAggregator",
]
