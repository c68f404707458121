"""Input discovery helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

__all__ = [
    "normalize_extensions",
    "iter_documents",
]


def normalize_extensions(
    values: Optional[Iterable[str]],
    *,
    default: Sequence[str] = ("md",),
) -> tuple[str, ...]:
    """Lowercase ``values`` and strip leading dots, keeping first-seen order.

    Empty or missing input falls back to ``default``.
    """
    result: list[str] = []
    for item in values or ():
        candidate = item.strip().lower().lstrip(".")
        if candidate and candidate not in result:
            result.append(candidate)
    return tuple(result) or tuple(default)


def iter_documents(
    paths: Sequence[Path],
    extensions: Iterable[str],
) -> Iterator[Path]:
    """Yield resolved document paths in the order they were given.

    Files are yielded as-is regardless of extension; directories are walked
    recursively (sorted by relative path) and filtered by ``extensions``. A
    document reachable twice is yielded once.
    """
    wanted = set(normalize_extensions(extensions))
    seen: set[Path] = set()
    for raw in paths:
        path = Path(raw).expanduser().resolve(strict=False)
        if path.is_dir():
            candidates: Iterable[Path] = _walk(path, wanted)
        elif path.exists():
            candidates = (path,)
        else:
            raise FileNotFoundError(f"Input not found: {path}")
        for candidate in candidates:
            if candidate not in seen:
                seen.add(candidate)
                yield candidate


def _walk(root: Path, extensions: set[str]) -> Iterator[Path]:
    for candidate in sorted(root.rglob("*")):
        if candidate.is_file() and _extension(candidate) in extensions:
            yield candidate


def _extension(path: Path) -> str:
    return path.suffix.lower().lstrip(".")
