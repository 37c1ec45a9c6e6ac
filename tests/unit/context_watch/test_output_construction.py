from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from context_watch.config import BuildStats, OutputFormat, Profile, ProfileOptions
from context_watch.exceptions import ArtifactWriteError, UnsupportedFormatError
from context_watch.output_construction import (
    MAX_TOKEN_PASSES,
    RenderContext,
    build_context,
    converge_tokens,
    escape_cdata,
    format_timestamp,
    get_formatter,
    write_artifact,
)
from context_watch.tokens import TokenEstimator

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

NOW = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)


def profile_with(**options: object) -> Profile:
    return Profile(
        name="backend",
        output_file=".context/out.md",
        include=["src/**"],
        options=ProfileOptions.model_validate({"preamble": "Be concise.", **options}),
    )


class RunawayEstimator:
    """Returns a different count on every call."""

    def __init__(self) -> None:
        self.calls = 0

    def count(self, _text: str) -> int:
        self.calls += 1
        return self.calls * 100


@pytest.mark.unit
def test_format_timestamp_is_utc_with_milliseconds() -> None:
    assert format_timestamp(NOW) == "2024-01-02T03:04:05.678Z"


@pytest.mark.unit
def test_markdown_document_layout(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"src/app.py": "print('ok')\n", "src/util/io.ts": "export {}\n"})

    built = build_context(tmp_path, profile_with(), ["src/app.py", "src/util/io.ts"], TokenEstimator.heuristic(), now=NOW)
    text = built.text

    assert text.startswith("# Project Context: backend\n> Generated: 2024-01-02T03:04:05.678Z\n> Files: 2\n")
    assert "> Total Size: 0.0 KB" in text
    assert f"> Estimated Tokens: {built.stats.token_count}" in text
    assert "# Preamble\n\nBe concise.\n\n" in text
    assert "# Project Tree\n\n```\n└── src/\n    ├── util/\n    │   └── io.ts\n    └── app.py\n```" in text
    assert "## Path: src/app.py (Size: 0.0 KB)\n\n```python\nprint('ok')\n```" in text
    assert "## Path: src/util/io.ts (Size: 0.0 KB)\n\n```typescript\nexport {}\n```" in text
    assert text.index("src/app.py (Size") < text.index("src/util/io.ts (Size")
    assert built.stats.file_count == 2  # noqa: PLR2004
    assert built.stats.timestamp == NOW


@pytest.mark.unit
def test_token_count_matches_the_final_document(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n" * 200})
    estimator = TokenEstimator.heuristic()

    built = build_context(tmp_path, profile_with(), ["src/app.py"], estimator, now=NOW)

    assert built.stats.token_count == estimator.count(built.text)


@pytest.mark.unit
@pytest.mark.parametrize("output_format", ["markdown", "xml"])
def test_rebuilding_the_same_input_gives_the_same_token_count(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
    output_format: str,
) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n" * 300, "src/lib/util.ts": "export const u = 1;\n" * 40})
    files = ["src/app.py", "src/lib/util.ts"]
    profile = profile_with(outputFormat=output_format)
    estimator = TokenEstimator.heuristic()

    first = build_context(tmp_path, profile, files, estimator, now=NOW)
    second = build_context(tmp_path, profile, files, estimator, now=NOW + timedelta(days=3, hours=7))

    assert first.text != second.text
    assert first.stats.token_count == second.stats.token_count
    assert second.stats.token_count == estimator.count(second.text)


@pytest.mark.unit
def test_token_line_and_tree_can_be_switched_off(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"a.md": "hello"})
    profile = profile_with(showTokenCount=False, showFileTree=False, preamble="")

    text = build_context(tmp_path, profile, ["a.md"], TokenEstimator.heuristic(), now=NOW).text

    assert "Estimated Tokens" not in text
    assert "# Project Tree" not in text
    assert "# Preamble" not in text
    assert "## Path: a.md" in text


@pytest.mark.unit
def test_markdown_fence_outgrows_backticks_in_content(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"README.md": "```bash\nls\n```\n"})

    text = build_context(tmp_path, profile_with(), ["README.md"], TokenEstimator.heuristic(), now=NOW).text

    assert "````markdown\n```bash\nls\n```\n````" in text


@pytest.mark.unit
def test_unreadable_files_are_skipped_and_not_counted(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"a.txt": "aaaa"})

    built = build_context(tmp_path, profile_with(), ["a.txt", "vanished.txt"], TokenEstimator.heuristic(), now=NOW)

    assert built.stats.file_count == 1
    assert built.stats.total_size_bytes == 4  # noqa: PLR2004
    assert "## Path: vanished.txt" not in built.text


@pytest.mark.unit
def test_xml_document_layout(
    tmp_path: Path,
    write_files: Callable[[Path, dict[str, str | bytes]], None],
) -> None:
    write_files(tmp_path, {"src/a&b.py": "s = ']]>'\n"})
    profile = profile_with(outputFormat="xml")

    built = build_context(tmp_path, profile, ["src/a&b.py"], TokenEstimator.heuristic(), now=NOW)
    text = built.text

    assert text.startswith("<project_context>\n  <metadata>\n    <profile>backend</profile>\n")
    assert "<generated_at>2024-01-02T03:04:05.678Z</generated_at>" in text
    assert f'<stats files="1" size="0.0 KB" tokens="{built.stats.token_count}" />' in text
    assert "<instructions>\n    <![CDATA[\nBe concise.\n    ]]>" in text
    assert f'<root path="{tmp_path}">' in text
    assert '<file path="src/a&amp;b.py" language="python" size="0.0 KB">' in text
    assert "s = ']]]]><![CDATA[>'" in text
    assert text.endswith("</project_context>\n")


@pytest.mark.unit
def test_escape_cdata_splits_terminators() -> None:
    assert escape_cdata("a]]>b]]>") == "a]]]]><![CDATA[>b]]]]><![CDATA[>"


@pytest.mark.unit
def test_get_formatter_rejects_unknown_formats() -> None:
    assert get_formatter(OutputFormat.XML) is get_formatter("xml")

    with pytest.raises(UnsupportedFormatError) as exc_info:
        get_formatter("json")

    assert "json" in str(exc_info.value)


@pytest.mark.unit
def test_converge_tokens_stops_after_max_passes() -> None:
    formatter = get_formatter(OutputFormat.MARKDOWN)
    ctx = RenderContext(
        profile_name="p",
        root="/repo",
        files=[],
        tree="",
        preamble="",
        show_token_count=True,
    )
    stats = BuildStats(file_count=0, total_size_bytes=0, token_count=0, timestamp=NOW)
    estimator = RunawayEstimator()

    built = converge_tokens(formatter, ctx, stats, "# Processed Files\n\n", estimator)  # type: ignore[arg-type]

    assert estimator.calls == MAX_TOKEN_PASSES + 1
    assert built.stats.token_count == (MAX_TOKEN_PASSES + 1) * 100
    assert f"> Estimated Tokens: {built.stats.token_count}" in built.text


@pytest.mark.unit
def test_write_artifact_creates_parents_and_overwrites(tmp_path: Path) -> None:
    target = tmp_path / "deep" / "er" / "out.md"

    write_artifact(target, "first")
    write_artifact(target, "second")

    assert target.read_text(encoding="utf-8") == "second"


@pytest.mark.unit
def test_write_artifact_wraps_os_errors(tmp_path: Path) -> None:
    (tmp_path / "blocker").write_text("not a directory", encoding="utf-8")

    with pytest.raises(ArtifactWriteError) as exc_info:
        write_artifact(tmp_path / "blocker" / "out.md", "text")

    assert exc_info.value.path == tmp_path / "blocker" / "out.md"
