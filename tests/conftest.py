from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Iterator

import pytest

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fixtures import FakeDependencies, WorkspaceBuilder  # noqa: E402

# Ensure src/ is importable without an editable install
ROOT = TESTS_DIR.parent
for extra in (ROOT, ROOT / "src"):
    path_str = str(extra)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


@pytest.fixture(autouse=True)
def _isolated_workspace(tmp_path: Path, monkeypatch) -> Iterator[Path]:
    """Point the shared workspace and export env vars at a tmp directory."""

    home = tmp_path / "weave-home"
    monkeypatch.setenv("WEAVE_UTILS_DATA_HOME", str(home))
    for key in list(os.environ):
        if key.startswith("WEAVE_EXPORT_"):
            monkeypatch.delenv(key, raising=False)
    yield home


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceBuilder:
    """Provide a helper bound to pytest's per-test tmp directory."""

    return WorkspaceBuilder(tmp_path)


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("weave_utils.tests")
    log.propagate = False
    log.handlers[:] = [logging.NullHandler()]
    return log


@pytest.fixture
def fake_deps() -> FakeDependencies:
    """Recording stand-ins for the per-document operations."""

    return FakeDependencies()
