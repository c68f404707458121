"""Shared testing fixtures for the weave_utils test suite."""

from .tools import FakeDependencies, python_tool  # noqa: F401
from .workspace import WorkspaceBuilder, build_tree, fence  # noqa: F401

__all__ = [
    "FakeDependencies",
    "WorkspaceBuilder",
    "build_tree",
    "fence",
    "python_tool",
]
