"""Single-document operations: execute, tangle, weave and launch tools.

Documents are Markdown files. Fenced code blocks carry their options on the
info line after the language, for example::

    ```python exec file=src/app.py
    print("hello")
    ```

``exec`` marks a block for execution (its stdout is written back as an
``output`` block right after it) and ``file=`` names the tangle target,
relative to the document's directory.
"""

from __future__ import annotations

import contextlib
import io
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterator, Mapping, Optional, Sequence

from jinja2 import Environment
from markdown_it import MarkdownIt
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .errors import ConversionFault, EmbeddedExecutionFault, TangleFault
from .formats import ExportSpec
from .invoker import ExportDependencies

OUTPUT_LANGUAGE = "output"
_EXEC_LANGUAGES = frozenset({"python", "py", "python3"})


@dataclass(frozen=True)
class CodeBlock:
    """A fenced code block and its location in the source lines."""

    language: str
    flags: frozenset[str]
    options: Mapping[str, str]
    content: str
    start: int
    end: int
    fence: str
    indent: str

    @property
    def executable(self) -> bool:
        return "exec" in self.flags and self.language in _EXEC_LANGUAGES

    @property
    def is_output(self) -> bool:
        return self.language == OUTPUT_LANGUAGE


@dataclass(frozen=True)
class ExecutionReport:
    """Result of running a document's executable blocks."""

    blocks_run: int = 0
    failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.failures


def _markdown() -> MarkdownIt:
    return MarkdownIt("commonmark", options_update={"html": True})


def parse_info(info: str) -> tuple[str, frozenset[str], dict[str, str]]:
    """Split a fence info string into language, flags and options."""

    words = info.split()
    if not words:
        return "", frozenset(), {}
    language, *rest = words
    flags: set[str] = set()
    options: dict[str, str] = {}
    for word in rest:
        key, sep, value = word.partition("=")
        if sep:
            options[key] = value.strip("\"'")
        else:
            flags.add(word)
    return language.lower(), frozenset(flags), options


def find_blocks(text: str) -> list[CodeBlock]:
    lines = text.splitlines()
    blocks: list[CodeBlock] = []
    for token in _markdown().parse(text):
        if token.type != "fence" or token.map is None:
            continue
        language, flags, options = parse_info(token.info)
        start, end = token.map
        opening = lines[start]
        blocks.append(
            CodeBlock(
                language=language,
                flags=flags,
                options=options,
                content=token.content,
                start=start,
                end=end,
                fence=token.markup,
                indent=opening[: len(opening) - len(opening.lstrip())],
            )
        )
    return blocks


@contextlib.contextmanager
def document_backup(document: Path) -> Iterator[Path]:
    """Keep a private copy of ``document`` for the duration of the block.

    The original content is restored if the block raises; the copy is always
    removed afterwards.
    """

    handle, name = tempfile.mkstemp(prefix=f"{document.stem}-", suffix=".bak")
    backup = Path(name)
    try:
        with open(handle, "wb") as target, document.open("rb") as source:
            shutil.copyfileobj(source, target)
        try:
            yield backup
        except BaseException:
            shutil.copyfile(backup, document)
            raise
    finally:
        backup.unlink(missing_ok=True)


def execute_embedded(document: Path) -> ExecutionReport:
    """Run the document's ``exec`` blocks and write their output back.

    Blocks share one namespace and run top to bottom. A failing block is
    reported and the remaining blocks still run.
    """

    try:
        text = document.read_text(encoding="utf-8")
    except OSError as exc:
        raise EmbeddedExecutionFault(f"Cannot read document: {exc}") from exc

    blocks = find_blocks(text)
    namespace: dict[str, object] = {"__name__": "__weave__"}
    results: list[tuple[CodeBlock, str]] = []
    failures: list[str] = []

    for block in blocks:
        if not block.executable:
            continue
        captured = io.StringIO()
        source_name = f"{document.name}:{block.start + 1}"
        try:
            with contextlib.redirect_stdout(captured):
                exec(compile(block.content, source_name, "exec"), namespace)
        except Exception as exc:
            failures.append(
                f"block at line {block.start + 1}: "
                f"{type(exc).__name__}: {exc}"
            )
            captured.write(f"{type(exc).__name__}: {exc}\n")
        results.append((block, captured.getvalue()))

    if results:
        updated = _weave_results(text, blocks, results)
        if updated != text:
            with document_backup(document):
                try:
                    document.write_text(updated, encoding="utf-8")
                except OSError as exc:
                    raise EmbeddedExecutionFault(
                        f"Cannot write results back: {exc}"
                    ) from exc

    return ExecutionReport(blocks_run=len(results), failures=tuple(failures))


def _weave_results(
    text: str,
    blocks: Sequence[CodeBlock],
    results: Sequence[tuple[CodeBlock, str]],
) -> str:
    lines = text.splitlines()
    following = {
        current.start: after for current, after in zip(blocks, blocks[1:])
    }
    # Walk bottom-up so earlier line numbers stay valid while splicing.
    for block, output in reversed(results):
        stop = block.end
        after = following.get(block.start)
        if (
            after is not None
            and after.is_output
            and _only_blank_between(lines, block.end, after.start)
        ):
            stop = after.end
        lines[block.end:stop] = _output_block(block, output) if output else []
    suffix = "\n" if text.endswith("\n") else ""
    return "\n".join(lines) + suffix


def _only_blank_between(lines: Sequence[str], start: int, stop: int) -> bool:
    return all(not line.strip() for line in lines[start:stop])


def _output_block(block: CodeBlock, output: str) -> list[str]:
    lines = output.rstrip("\n").split("\n")
    body = [f"{block.indent}{line}" for line in lines]
    fence = f"{block.indent}{block.fence}"
    return ["", f"{fence}{OUTPUT_LANGUAGE}", *body, fence]


def _read_source(document: Path) -> str:
    try:
        return document.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TangleFault(f"Cannot read document: {exc}") from exc


def tangle_targets(document: Path) -> list[Path]:
    """Return the files ``document`` tangles into, in first-seen order."""

    text = _read_source(document)
    targets: list[Path] = []
    for block in find_blocks(text):
        target = block.options.get("file")
        if target:
            path = (document.parent / target).resolve(strict=False)
            if path not in targets:
                targets.append(path)
    return targets


def tangle(document: Path) -> list[Path]:
    """Write every ``file=`` block of ``document`` into its target file."""

    text = _read_source(document)

    chunks: dict[Path, list[str]] = {}
    for block in find_blocks(text):
        target = block.options.get("file")
        if not target:
            continue
        path = (document.parent / target).resolve(strict=False)
        chunks.setdefault(path, []).append(block.content)

    for path, contents in chunks.items():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("".join(contents), encoding="utf-8")
        except OSError as exc:
            raise TangleFault(f"Cannot write {path}: {exc}") from exc
    return list(chunks)


_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{{ title }}</title>
  <style>
    body { font-family: sans-serif; line-height: 1.45; max-width: 48em;
           margin: 2em auto; color: #111; }
    pre { background: #f7f7f7; padding: 0.6em; overflow-x: auto; }
    {{ highlight_css }}
  </style>
</head>
<body>
{{ body | safe }}
</body>
</html>
"""


def render_html(text: str, *, title: str, style: str = "default") -> str:
    formatter = HtmlFormatter(style=style, nowrap=True)

    def highlight_code(code: str, language: str, _attrs: object) -> str:
        if not language:
            return ""
        try:
            lexer = get_lexer_by_name(language)
        except ClassNotFound:
            return ""
        return highlight(code, lexer, formatter)

    md = MarkdownIt(
        "commonmark",
        options_update={"html": True, "highlight": highlight_code},
    )
    template = Environment(autoescape=True).from_string(_PAGE)
    return template.render(
        title=title,
        body=md.render(text),
        highlight_css=HtmlFormatter(style=style).get_style_defs("pre code"),
    )


def render_text(text: str) -> str:
    """Flatten Markdown to plain text: headings, paragraphs and code."""

    chunks: list[str] = []
    prefix = ""
    for token in _markdown().parse(text):
        if token.type == "list_item_open":
            prefix = "- "
        elif token.type == "inline":
            pieces = []
            for child in token.children or ():
                if child.type in ("text", "code_inline"):
                    pieces.append(child.content)
                elif child.type in ("softbreak", "hardbreak"):
                    pieces.append("\n")
            chunks.append(prefix + "".join(pieces))
            prefix = ""
        elif token.type in ("fence", "code_block"):
            chunks.append(token.content.rstrip("\n"))
    return "\n\n".join(chunk for chunk in chunks if chunk.strip()) + "\n"


def render_woven_markdown(text: str) -> str:
    """Return ``text`` with fence options stripped down to the language."""

    lines = text.splitlines()
    for block in find_blocks(text):
        opening = lines[block.start]
        marker = opening.find(block.fence)
        if marker < 0:
            continue
        lines[block.start] = (
            f"{opening[: marker + len(block.fence)]}{block.language}"
        )
    suffix = "\n" if text.endswith("\n") else ""
    return "\n".join(lines) + suffix


def _document_title(text: str, fallback: str) -> str:
    tokens = _markdown().parse(text)
    for current, following in zip(tokens, tokens[1:]):
        if current.type == "heading_open" and following.type == "inline":
            return following.content
    return fallback


def convert_in_process(document: Path, spec: ExportSpec, output: Path) -> None:
    """Render ``document`` into ``output`` with an in-process backend."""

    text = document.read_text(encoding="utf-8")
    if spec.backend == "html":
        title = _document_title(text, document.stem)
        rendered = render_html(text, title=title)
    elif spec.backend == "text":
        rendered = render_text(text)
    elif spec.backend == "markdown":
        rendered = render_woven_markdown(text)
    else:
        raise ConversionFault(
            f"Backend '{spec.backend}' cannot run in-process.",
            stage=spec.id,
        )
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered, encoding="utf-8")


def build_command(
    spec: ExportSpec, document: Path, output: Path
) -> list[str]:
    """Fill ``{input}``, ``{output}`` and ``{stem}`` in ``spec.command``."""

    values = {
        "{input}": str(document),
        "{output}": str(output),
        "{stem}": document.stem,
    }
    argv = []
    for part in spec.command:
        for placeholder, value in values.items():
            part = part.replace(placeholder, value)
        argv.append(part)
    return argv


def launch_external(
    document: Path,
    spec: ExportSpec,
    output: Path,
    log: IO[bytes],
    command: Optional[Sequence[str]] = None,
) -> subprocess.Popen:
    """Start the external converter; stdout and stderr go to ``log``."""

    argv = list(command) if command is not None else build_command(
        spec, document, output
    )
    output.parent.mkdir(parents=True, exist_ok=True)
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=log,
        stderr=subprocess.STDOUT,
        cwd=document.parent,
    )


def default_dependencies() -> ExportDependencies:
    return ExportDependencies(
        convert_in_process=convert_in_process,
        launch_external=launch_external,
        build_command=build_command,
        execute_embedded=execute_embedded,
        tangle=tangle,
        tangle_targets=tangle_targets,
    )


__all__ = [
    "CodeBlock",
    "ExecutionReport",
    "build_command",
    "convert_in_process",
    "default_dependencies",
    "document_backup",
    "execute_embedded",
    "find_blocks",
    "launch_external",
    "parse_info",
    "render_html",
    "render_text",
    "render_woven_markdown",
    "tangle",
    "tangle_targets",
]
