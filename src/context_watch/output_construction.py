from __future__ import annotations

import io
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NamedTuple

from context_watch.config import BuildStats, FileData, OutputFormat
from context_watch.exceptions import ArtifactWriteError, UnsupportedFormatError
from context_watch.file_manipulation import build_tree_lines, file_language, human_size, read_text
from context_watch.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from context_watch.config import Profile
    from context_watch.tokens import TokenEstimator

MAX_TOKEN_PASSES = 3

_BACKTICK_RUN = re.compile(r"`{3,}")


@dataclass(frozen=True)
class RenderContext:
    """Everything a formatter needs besides the stats of the build."""

    profile_name: str
    root: str
    files: Sequence[FileData]
    tree: str
    preamble: str
    show_token_count: bool


class Formatter(NamedTuple):
    """The three operations every output format provides."""

    render_header: Callable[[RenderContext, BuildStats], str]
    render_body: Callable[[RenderContext], str]
    assemble: Callable[[str, str], str]


class BuiltContext(NamedTuple):
    text: str
    stats: BuildStats


def format_timestamp(ts: datetime) -> str:
    """Render a timestamp as UTC ISO 8601 with milliseconds, e.g. ``2024-01-01T00:00:00.000Z``."""
    return ts.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ------------------------------ Markdown ------------------------------------


def _fence_for(content: str) -> str:
    longest = max((len(m.group(0)) for m in _BACKTICK_RUN.finditer(content)), default=2)
    return "`" * max(3, longest + 1)


def render_markdown_header(ctx: RenderContext, stats: BuildStats) -> str:
    lines = [
        f"# Project Context: {ctx.profile_name}",
        f"> Generated: {format_timestamp(stats.timestamp)}",
        f"> Files: {stats.file_count}",
        f"> Total Size: {human_size(stats.total_size_bytes)}",
    ]
    if ctx.show_token_count:
        lines.append(f"> Estimated Tokens: {stats.token_count}")
    return "\n".join(lines)


def render_markdown_body(ctx: RenderContext) -> str:
    out = io.StringIO()
    if ctx.preamble:
        out.write(f"# Preamble\n\n{ctx.preamble}\n\n")
    if ctx.tree:
        out.write(f"# Project Tree\n\n```\n{ctx.tree}```\n\n")
    out.write("# Processed Files\n\n")

    sections: list[str] = []
    for fd in ctx.files:
        fence = _fence_for(fd.content)
        content = fd.content if fd.content.endswith("\n") or not fd.content else fd.content + "\n"
        sections.append(
            f"## Path: {fd.path} (Size: {human_size(fd.size)})\n\n{fence}{fd.language}\n{content}{fence}",
        )
    out.write("\n\n".join(sections))
    return out.getvalue()


def assemble_markdown(header: str, body: str) -> str:
    return f"{header}\n\n{body.rstrip()}\n"


# ------------------------------ XML -----------------------------------------


def escape_cdata(text: str) -> str:
    """Split every ``]]>`` so the text can live inside a CDATA section."""
    return text.replace("]]>", "]]]]><![CDATA[>")


def escape_xml(text: str) -> str:
    """Escape markup characters for attribute and text positions."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def render_xml_header(ctx: RenderContext, stats: BuildStats) -> str:
    tokens = f' tokens="{stats.token_count}"' if ctx.show_token_count else ""
    return "\n".join(
        [
            "<project_context>",
            "  <metadata>",
            f"    <profile>{escape_xml(ctx.profile_name)}</profile>",
            f"    <generated_at>{format_timestamp(stats.timestamp)}</generated_at>",
            f'    <stats files="{stats.file_count}" size="{human_size(stats.total_size_bytes)}"{tokens} />',
            "  </metadata>",
        ],
    )


def render_xml_body(ctx: RenderContext) -> str:
    parts: list[str] = []
    if ctx.preamble:
        parts.append("  <instructions>")
        parts.append(f"    <![CDATA[\n{escape_cdata(ctx.preamble)}\n    ]]>")
        parts.append("  </instructions>")
    if ctx.tree:
        parts.append("  <file_tree>")
        parts.append(f"    <![CDATA[\n{escape_cdata(ctx.tree)}    ]]>")
        parts.append("  </file_tree>")

    parts.append("  <files>")
    parts.append(f'    <root path="{escape_xml(ctx.root)}">')
    for fd in ctx.files:
        parts.append(
            f'      <file path="{escape_xml(fd.path)}" language="{escape_xml(fd.language)}" '
            f'size="{human_size(fd.size)}">',
        )
        parts.append(f"        <![CDATA[\n{escape_cdata(fd.content)}\n        ]]>")
        parts.append("      </file>")
    parts.append("    </root>")
    parts.append("  </files>")
    parts.append("</project_context>")
    return "\n".join(parts)


def assemble_xml(header: str, body: str) -> str:
    return f"{header}\n{body}\n"


FORMATTERS: dict[OutputFormat, Formatter] = {
    OutputFormat.MARKDOWN: Formatter(render_markdown_header, render_markdown_body, assemble_markdown),
    OutputFormat.XML: Formatter(render_xml_header, render_xml_body, assemble_xml),
}


def get_formatter(fmt: OutputFormat | str) -> Formatter:
    """Select the formatter registered for `fmt`.

    Raises:
        UnsupportedFormatError: when no formatter handles `fmt`.
    """
    try:
        return FORMATTERS[OutputFormat(fmt)]
    except (KeyError, ValueError):
        raise UnsupportedFormatError(format=str(fmt)) from None


# ------------------------------ Assembly ------------------------------------


def read_file_data(root: Path, rel: str) -> FileData | None:
    """Read one resolved file; unreadable files are logged and skipped.

    Args:
        root (Path): the monitored root
        rel (str): POSIX path relative to root

    Returns:
        FileData | None: the file record, or None when it cannot be read
    """
    path = root / rel
    try:
        size = path.stat().st_size
        content = read_text(path)
    except OSError as e:
        logger.warning("file_read_failed", path=rel, error=str(e))
        return None
    return FileData(path=rel, content=content, size=size, language=file_language(rel))


def converge_tokens(
    formatter: Formatter,
    ctx: RenderContext,
    stats: BuildStats,
    body: str,
    estimator: TokenEstimator,
) -> BuiltContext:
    """Find a token count that survives being written into its own header.

    The body is counted once; then the header is rendered with the current
    estimate, the whole document is recounted, and the loop stops once the
    count is stable or after ``MAX_TOKEN_PASSES`` passes. The last computed
    count is accepted in the latter case.

    Args:
        formatter (Formatter): the output format in use
        ctx (RenderContext): render inputs
        stats (BuildStats): stats of the build, token count ignored
        body (str): the pre-rendered body
        estimator (TokenEstimator): the session's token estimator

    Returns:
        BuiltContext: the final document and its stats
    """
    estimate = estimator.count(body)
    for _ in range(MAX_TOKEN_PASSES):
        current = stats.model_copy(update={"token_count": estimate})
        document = formatter.assemble(formatter.render_header(ctx, current), body)
        recount = estimator.count(document)
        if recount == estimate:
            return BuiltContext(document, current)
        estimate = recount

    final = stats.model_copy(update={"token_count": estimate})
    return BuiltContext(formatter.assemble(formatter.render_header(ctx, final), body), final)


def build_context(
    root: Path,
    profile: Profile,
    files: Sequence[str],
    estimator: TokenEstimator,
    *,
    now: datetime | None = None,
) -> BuiltContext:
    """Render the context document for a resolved file list.

    Args:
        root (Path): the monitored root
        profile (Profile): the profile being built
        files (Sequence[str]): the resolved file list
        estimator (TokenEstimator): the session's token estimator
        now (datetime | None): build timestamp, defaults to the current time

    Returns:
        BuiltContext: the document text and the stats of the build

    Raises:
        UnsupportedFormatError: when the profile's format has no formatter.
    """
    formatter = get_formatter(profile.options.output_format)
    timestamp = now or datetime.now(UTC)

    files_data = [fd for fd in (read_file_data(root, rel) for rel in files) if fd is not None]
    tree = ""
    if profile.options.show_file_tree and files:
        tree = "\n".join(build_tree_lines(files)) + "\n"

    ctx = RenderContext(
        profile_name=profile.name,
        root=str(root),
        files=files_data,
        tree=tree,
        preamble=profile.options.preamble,
        show_token_count=profile.options.show_token_count,
    )
    stats = BuildStats(
        file_count=len(files_data),
        total_size_bytes=sum(fd.size for fd in files_data),
        token_count=0,
        timestamp=timestamp,
    )
    return converge_tokens(formatter, ctx, stats, formatter.render_body(ctx), estimator)


def write_artifact(path: Path, text: str) -> None:
    """Write the artifact as UTF-8, creating parent directories and overwriting.

    Raises:
        ArtifactWriteError: when the directory or file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ArtifactWriteError(path=path, reason=str(e)) from e
