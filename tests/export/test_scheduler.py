from __future__ import annotations

import io
import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from rich.console import Console

from fixtures.tools import (
    COPY,
    FAIL,
    SLOW_COPY,
    external_spec,
    in_process_spec,
)
from weave_utils.export import documents as document_ops
from weave_utils.export.formats import (
    ExportSpec,
    FormatRegistry,
    compile_latex,
)
from weave_utils.export.reporter import StatusReporter
from weave_utils.export.scheduler import Mode, RunOptions, Scheduler
from weave_utils.export.state import (
    InvalidTransitionError,
    SchedulerInvariantError,
    State,
    WorkItem,
)


def _scheduler(fake_deps, logger, specs, **kwargs) -> Scheduler:
    registry = FormatRegistry(specs, which=lambda tool: tool)
    return Scheduler(
        registry=registry,
        dependencies=fake_deps.bundle(),
        logger=logger,
        **kwargs,
    )


def _documents(workspace, *names: str) -> list[Path]:
    return [
        workspace.write(f"{name}.md", f"# {name}\n\nbody of {name}\n")
        for name in names
    ]


def _options(**kwargs) -> RunOptions:
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("status_interval", 0.0)
    return RunOptions(**kwargs)


def test_single_document_single_format_runs_synchronously(
    fake_deps, logger, workspace
):
    (document,) = _documents(workspace, "solo")
    scheduler = _scheduler(fake_deps, logger, [in_process_spec("txt")])

    scheduler.submit([document], ["txt"], _options())
    result = scheduler.run()

    assert not scheduler.asynchronous
    assert scheduler.invoker.calls == 1
    assert scheduler.admission.admitted == []
    assert scheduler.supervisor.launched == 0
    assert result.states.state_of(document, "txt") is State.COMPLETED
    assert result.succeeded
    assert result.exit_code == 0
    assert result.error_report == ""


def test_external_jobs_respect_the_concurrency_limit(
    fake_deps, logger, workspace
):
    documents = _documents(workspace, "a", "b", "c")
    scheduler = _scheduler(
        fake_deps,
        logger,
        [external_spec("pdf", SLOW_COPY), external_spec("docx", COPY)],
    )

    scheduler.submit(
        documents, ["pdf", "docx"], _options(concurrency_limit=1)
    )
    result = scheduler.run()

    assert scheduler.asynchronous
    assert result.peak_running == 1
    assert result.launched == 6
    assert result.completed_count == 6
    assert scheduler.admission.admitted == [
        WorkItem(document, format_id)
        for document in documents
        for format_id in ("pdf", "docx")
    ]
    for document in documents:
        assert document.with_suffix(".pdf").exists()
        assert document.with_suffix(".docx").exists()


def test_parallel_external_jobs_overlap_up_to_the_limit(
    fake_deps, logger, workspace
):
    documents = _documents(workspace, "a", "b", "c", "d")
    scheduler = _scheduler(
        fake_deps, logger, [external_spec("pdf", SLOW_COPY)]
    )

    scheduler.submit(documents, ["pdf"], _options(concurrency_limit=2))
    result = scheduler.run()

    assert result.peak_running == 2
    assert result.launched == 4
    assert result.succeeded


def test_stdout_redirect_emits_outputs_in_submission_order(
    fake_deps, logger, workspace
):
    documents = _documents(workspace, "first", "second")
    stream = io.StringIO()
    scheduler = _scheduler(
        fake_deps, logger, [in_process_spec("txt")], stream=stream
    )

    scheduler.submit(documents, ["txt"], _options(stdout_redirect=True))
    result = scheduler.run()

    assert result.succeeded
    assert stream.getvalue() == "txt:first.md\ntxt:second.md\n"
    for document in documents:
        assert not document.with_suffix(".txt").exists()
    for _, _, temp_output in fake_deps.conversions:
        assert not temp_output.exists()
    assert len(scheduler.redirects) == 0


def test_stdout_redirect_with_external_tools(fake_deps, logger, workspace):
    documents = _documents(workspace, "first", "second")
    stream = io.StringIO()
    scheduler = _scheduler(
        fake_deps,
        logger,
        [in_process_spec("txt"), external_spec("pdf", SLOW_COPY)],
        stream=stream,
    )

    scheduler.submit(
        documents, ["pdf", "txt"], _options(stdout_redirect=True)
    )
    scheduler.run()

    assert stream.getvalue() == (
        "# first\n\nbody of first\n"
        "txt:first.md\n"
        "# second\n\nbody of second\n"
        "txt:second.md\n"
    )
    for document in documents:
        assert not document.with_suffix(".pdf").exists()


def test_identical_failures_are_grouped_in_the_report(
    fake_deps, logger, workspace
):
    (document,) = _documents(workspace, "doc1")
    fake_deps.failing_formats.update({"html": "boom", "txt": "boom"})
    scheduler = _scheduler(
        fake_deps,
        logger,
        [in_process_spec("html"), in_process_spec("txt")],
    )

    scheduler.submit([document], ["html", "txt"], _options())
    result = scheduler.run()

    assert result.exit_code == 1
    assert result.failed_count == 2
    assert result.error_report == f"{document}\n  [html, txt] boom\n"


def test_failures_do_not_block_sibling_work(fake_deps, logger, workspace):
    documents = _documents(workspace, "a", "b")
    missing = ExportSpec(
        id="docx",
        backend="pandoc",
        output_extension=".docx",
        external_tool_required=True,
        command=("missing-tool", "{input}"),
    )
    registry = FormatRegistry(
        [in_process_spec("txt"), external_spec("pdf", FAIL), missing],
        which=lambda tool: None,
    )
    scheduler = Scheduler(
        registry=registry, dependencies=fake_deps.bundle(), logger=logger
    )

    scheduler.submit(documents, ["txt", "pdf", "docx"], _options())
    result = scheduler.run()

    snapshot = result.states
    assert snapshot.finished
    for document in documents:
        assert snapshot.state_of(document, "txt") is State.COMPLETED
        assert snapshot.state_of(document, "pdf") is State.ERROR
        assert snapshot.state_of(document, "docx") is State.ERROR
        entries = scheduler.errors.entries(document)
        assert "converter exploded" in entries["pdf"][0]
        assert "(exit status 3)" in entries["pdf"][0]
        assert "missing-tool" in entries["docx"][0]
    assert result.launched == 2


def test_execute_and_tangle_run_before_exports(
    fake_deps, logger, workspace
):
    (document,) = _documents(workspace, "lit")
    target = workspace.root / "lit.py"
    fake_deps.tangle_outputs.append(target)
    fake_deps.exec_failures = ("block at line 4: NameError: name 'x'",)
    transitions: list[tuple[str, str]] = []
    scheduler = _scheduler(
        fake_deps, logger, [in_process_spec("txt"), external_spec("pdf")]
    )

    def record(snapshot):
        for item, state in snapshot.items():
            entry = (item.format, state.value)
            if entry not in transitions:
                transitions.append(entry)

    scheduler.tracker.subscribe(record)
    scheduler.submit(
        [document], ["txt", "pdf"], _options(execute=True, tangle=True)
    )
    result = scheduler.run()

    assert result.states.columns == ("tangle", "txt", "pdf")
    assert fake_deps.executed == [document]
    assert fake_deps.tangled == [document]
    assert target.read_text(encoding="utf-8") == "tangled\n"
    assert ("txt", "executing") in transitions
    assert ("pdf", "executing") not in transitions
    assert ("pdf", "started") in transitions
    assert ("tangle", "tangling") in transitions
    assert result.states.count(State.COMPLETED) == 3
    assert result.exit_code == 1
    assert result.error_report.splitlines()[1] == (
        "  [exec] block at line 4: NameError: name 'x'"
    )


def test_tangle_failure_marks_only_the_tangle_column(
    fake_deps, logger, workspace
):
    from weave_utils.export.errors import TangleFault

    (document,) = _documents(workspace, "lit")
    fake_deps.tangle_error = TangleFault("Cannot write /ro/x.py")
    scheduler = _scheduler(fake_deps, logger, [in_process_spec("txt")])

    scheduler.submit([document], ["txt"], _options(tangle=True))
    result = scheduler.run()

    assert result.states.state_of(document, "tangle") is State.ERROR
    assert result.states.state_of(document, "txt") is State.COMPLETED
    assert "[tangle] Cannot write /ro/x.py" in result.error_report


def test_clean_mode_removes_outputs(fake_deps, logger, workspace):
    documents = _documents(workspace, "a", "b")
    target = workspace.write("a_tangled.py", "x = 1\n")
    fake_deps.tangle_outputs.append(target)
    out_dir = workspace.root / "out"
    for document in documents:
        workspace.write(f"out/{document.stem}.txt", "old")
        workspace.write(f"out/{document.stem}.pdf", "old")
    scheduler = _scheduler(
        fake_deps, logger, [in_process_spec("txt"), external_spec("pdf")]
    )

    scheduler.submit(
        documents,
        ["txt", "pdf"],
        _options(clean_mode=True, tangle=True, output_dir=out_dir),
    )
    result = scheduler.run()

    assert result.succeeded
    assert result.completed_count == 6
    assert list(out_dir.iterdir()) == []
    assert not target.exists()
    assert fake_deps.conversions == []
    assert result.launched == 0


def test_clean_mode_undecodable_document_fails_only_its_tangle_cell(
    fake_deps, logger, workspace
):
    broken = workspace.root / "broken.md"
    broken.write_bytes(b"# t\n\n\xff\xfe bad bytes\n")
    (sibling,) = _documents(workspace, "ok")
    leftover = workspace.write("ok.txt", "old")
    dependencies = replace(
        fake_deps.bundle(), tangle_targets=document_ops.tangle_targets
    )
    scheduler = Scheduler(
        registry=FormatRegistry([in_process_spec("txt")]),
        dependencies=dependencies,
        logger=logger,
    )

    scheduler.submit(
        [broken, sibling], ["txt"], _options(clean_mode=True, tangle=True)
    )
    result = scheduler.run()

    assert result.states.state_of(broken, "tangle") is State.ERROR
    assert result.states.state_of(broken, "txt") is State.COMPLETED
    assert result.states.state_of(sibling, "tangle") is State.COMPLETED
    assert not leftover.exists()
    assert result.exit_code == 1
    assert "[tangle] Cannot read document" in result.error_report


def test_clean_mode_records_unexpected_collaborator_errors(
    fake_deps, logger, workspace
):
    first, second = _documents(workspace, "a", "b")
    calls = []

    def targets(document):
        calls.append(document)
        if document == first:
            raise ValueError("bad front matter")
        return []

    dependencies = replace(fake_deps.bundle(), tangle_targets=targets)
    scheduler = Scheduler(
        registry=FormatRegistry([in_process_spec("txt")]),
        dependencies=dependencies,
        logger=logger,
    )

    scheduler.submit(
        [first, second], ["txt"], _options(clean_mode=True, tangle=True)
    )
    result = scheduler.run()

    assert calls == [first, second]
    assert result.states.finished
    assert result.states.state_of(first, "tangle") is State.ERROR
    assert result.states.state_of(second, "tangle") is State.COMPLETED
    assert "[tangle] ValueError: bad front matter" in result.error_report


FAKE_PDFLATEX = """\
import pathlib, sys
stem = pathlib.Path(sys.argv[-1]).stem
for suffix in (".pdf", ".aux", ".log"):
    pathlib.Path(stem + suffix).touch()
"""


def test_stdout_redirect_removes_post_action_byproducts(
    fake_deps, logger, workspace, tmp_path, monkeypatch
):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    pdflatex = bin_dir / "pdflatex"
    pdflatex.write_text(
        f"#!{sys.executable}\n{FAKE_PDFLATEX}", encoding="utf-8"
    )
    pdflatex.chmod(0o755)
    monkeypatch.setenv(
        "PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"
    )
    spec = replace(
        in_process_spec("latex", ".tex"), post_action=compile_latex
    )
    (document,) = _documents(workspace, "paper")
    stream = io.StringIO()
    scheduler = _scheduler(fake_deps, logger, [spec], stream=stream)

    scheduler.submit([document], ["latex"], _options(stdout_redirect=True))
    result = scheduler.run()

    assert result.succeeded, result.error_report
    assert stream.getvalue() == "latex:paper.md\n"
    ((_, _, temp_output),) = fake_deps.conversions
    assert not temp_output.parent.exists()
    assert not document.with_suffix(".tex").exists()
    assert not document.with_suffix(".pdf").exists()


def test_sync_mode_renders_after_every_transition(
    fake_deps, logger, workspace
):
    documents = _documents(workspace, "a", "b")
    reporter = StatusReporter(
        Console(file=io.StringIO(), width=80), enabled=True
    )
    scheduler = _scheduler(
        fake_deps, logger, [in_process_spec("txt")], reporter=reporter
    )

    scheduler.submit(documents, ["txt"], _options(mode=Mode.SYNC))
    scheduler.run()

    # initial render, one per completion, final render
    assert reporter.renders == 4


def test_async_status_renders_are_interval_gated(
    fake_deps, logger, workspace
):
    documents = _documents(workspace, "a", "b", "c")
    reporter = StatusReporter(
        Console(file=io.StringIO(), width=80), enabled=True
    )
    scheduler = _scheduler(
        fake_deps,
        logger,
        [in_process_spec("txt")],
        reporter=reporter,
        clock=lambda: 100.0,
    )

    scheduler.submit(
        documents, ["txt"], _options(mode=Mode.ASYNC, status_interval=5.0)
    )
    scheduler.run()

    # initial render, one gated tick, final render
    assert reporter.renders == 3


def test_fatal_error_releases_resources(fake_deps, logger, workspace):
    documents = _documents(workspace, "a", "b")
    scheduler = _scheduler(
        fake_deps,
        logger,
        [
            in_process_spec("txt"),
            external_spec("pdf", "import time; time.sleep(30)"),
        ],
    )
    convert = fake_deps.convert_in_process

    def double_report(document, spec, output):
        convert(document, spec, output)
        if document == documents[1]:
            scheduler.tracker.set_state(document, spec.id, State.COMPLETED)

    fake_deps.convert_in_process = double_report
    scheduler._deps = fake_deps.bundle()
    scheduler.submit(
        documents, ["txt", "pdf"], _options(stdout_redirect=True)
    )

    with pytest.raises(InvalidTransitionError):
        scheduler.run()

    assert scheduler.supervisor.running_count == 0
    assert len(scheduler.redirects) == 0


def test_submit_and_run_are_single_use(fake_deps, logger, workspace):
    (document,) = _documents(workspace, "a")
    scheduler = _scheduler(fake_deps, logger, [in_process_spec("txt")])

    with pytest.raises(SchedulerInvariantError):
        scheduler.run()

    scheduler.submit([document], ["txt"], _options())
    with pytest.raises(SchedulerInvariantError):
        scheduler.submit([document], ["txt"], _options())


def test_mode_from_value():
    assert Mode.from_value(" Async ") is Mode.ASYNC
    with pytest.raises(ValueError):
        Mode.from_value("parallel")
