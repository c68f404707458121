from __future__ import annotations

import sys
from pathlib import Path

import pytest

from weave_utils.export import formats
from weave_utils.export.errors import ConversionFault
from weave_utils.export.formats import (
    ExportSpec,
    FormatRegistry,
    UnknownFormatError,
    default_specs,
)


def test_default_specs_cover_in_process_and_external_formats():
    registry = FormatRegistry(default_specs())

    assert registry.ids == ("html", "txt", "md", "pdf", "docx", "latex")
    assert not registry.get("html").external_tool_required
    assert registry.get("pdf").command[0] == "pandoc"
    assert registry.get("latex").post_action is formats.compile_latex


def test_output_path_beside_document_or_in_output_dir(tmp_path):
    spec = FormatRegistry(default_specs()).get("md")
    document = tmp_path / "notes" / "intro.md"

    assert spec.output_path(document, None) == (
        tmp_path / "notes" / "intro.woven.md"
    )
    assert spec.output_path(document, tmp_path / "out") == (
        tmp_path / "out" / "intro.woven.md"
    )


def test_unknown_format_lists_known_ids():
    registry = FormatRegistry(default_specs())

    with pytest.raises(UnknownFormatError) as excinfo:
        registry.resolve(["html", "epub"])

    assert "epub" in str(excinfo.value)
    assert "html" in str(excinfo.value)


def test_capability_is_checked_once_and_cached():
    calls = []

    def which(tool):
        calls.append(tool)
        return None

    registry = FormatRegistry(default_specs(), which=which)

    first = registry.capability("pdf")
    second = registry.capability("pdf")

    assert not first.available
    assert "pandoc" in first.reason
    assert second is first
    assert calls == ["pandoc"]


def test_external_capability_accepts_absolute_tool_path():
    registry = FormatRegistry(
        [
            ExportSpec(
                id="pdf",
                backend="tool",
                output_extension=".pdf",
                external_tool_required=True,
                command=(sys.executable, "-c", "pass"),
            )
        ],
        which=lambda tool: None,
    )

    assert registry.capability("pdf").available


def test_in_process_capability_checks_required_modules():
    registry = FormatRegistry(
        default_specs(),
        module_available=lambda name: name != "pygments",
    )

    html = registry.capability("html")
    assert not html.available
    assert "pygments" in html.reason
    assert registry.capability("txt").available
    assert registry.capability("md").available


def test_with_commands_overrides_external_argv():
    registry = FormatRegistry(default_specs()).with_commands(
        {"pdf": ["md2pdf", "{input}", "{output}"]}
    )

    assert registry.get("pdf").command == ("md2pdf", "{input}", "{output}")
    assert registry.get("docx").command[0] == "pandoc"


def test_with_commands_rejects_unknown_and_in_process_formats():
    registry = FormatRegistry(default_specs())

    with pytest.raises(UnknownFormatError):
        registry.with_commands({"epub": ["x"]})
    with pytest.raises(UnknownFormatError):
        registry.with_commands({"html": ["x"]})


def test_compile_latex_reports_failures(tmp_path, monkeypatch):
    class Result:
        returncode = 1
        stdout = "! Undefined control sequence.\n"
        stderr = ""

    seen = {}

    def fake_run(command, **kwargs):
        seen["command"] = command
        seen["cwd"] = kwargs["cwd"]
        return Result()

    monkeypatch.setattr(formats.subprocess, "run", fake_run)
    output = tmp_path / "paper.tex"

    with pytest.raises(ConversionFault) as excinfo:
        formats.compile_latex(output)

    assert seen["command"][-1] == "paper.tex"
    assert seen["cwd"] == tmp_path
    assert "Undefined control sequence" in str(excinfo.value)


def test_compile_latex_missing_binary(tmp_path, monkeypatch):
    def fake_run(command, **kwargs):
        raise FileNotFoundError("pdflatex")

    monkeypatch.setattr(formats.subprocess, "run", fake_run)

    with pytest.raises(ConversionFault, match="could not start"):
        formats.compile_latex(Path(tmp_path / "paper.tex"))
