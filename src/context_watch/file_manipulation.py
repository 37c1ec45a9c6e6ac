from __future__ import annotations

import glob
import os
import posixpath
import re
import stat
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pathspec

from context_watch.config import EXT2LANG, IGNORE_FILE, NAME2LANG
from context_watch.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

BINARY_SNIFF_BYTES = 8192

_MAGIC = re.compile(r"[*?\[{]")
_BRACES = re.compile(r"\{([^{}]*,[^{}]*)\}")


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return str(path.relative_to(root)).replace("\\", "/")
    except ValueError:
        return str(path)


def normalize_abs_path(path: str | Path) -> str:
    """Absolute, normalized form of `path` used for identity comparisons.

    Separators are unified and, on case-insensitive platforms, case is folded.
    """
    return os.path.normcase(os.path.normpath(os.path.abspath(path)))


def file_language(path: Path | str) -> str:
    """Heuristically determine a file's language tag for fenced code blocks.

    Args:
        path (Path | str): the file path to analyze

    Returns:
        str: a language string such as "python", or "" for unknown files
    """
    p = Path(path)
    by_name = NAME2LANG.get(p.name.lower())
    if by_name:
        return by_name
    return EXT2LANG.get(p.suffix.lower(), "")


def human_size(size: int) -> str:
    """Render a byte count as kilobytes with one decimal, e.g. ``1.5 KB``."""
    return f"{size / 1024:.1f} KB"


def normalize_globs(globs: Iterable[str]) -> list[str]:
    """Normalize a sequence of path glob patterns.

    Strip whitespace, replace backslashes with forward slashes and drop a
    leading ``./``. Empty patterns are removed.

    Args:
        globs (Iterable[str]): the glob patterns to normalize

    Returns:
        list[str]: the normalized glob patterns
    """
    out: list[str] = []
    for g in globs:
        g2 = (g or "").strip().replace("\\", "/")
        while g2.startswith("./"):
            g2 = g2[2:]
        if g2:
            out.append(g2)
    return out


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives of a glob into plain glob patterns.

    Nested groups are expanded innermost first, so ``src/**/*.{ts,js}`` gives
    ``src/**/*.ts`` and ``src/**/*.js``.

    Args:
        pattern (str): the glob pattern, possibly with brace groups

    Returns:
        list[str]: the expanded patterns, in order of appearance
    """
    m = _BRACES.search(pattern)
    if m is None:
        return [pattern]
    head, tail = pattern[: m.start()], pattern[m.end() :]
    out: list[str] = []
    for alt in m.group(1).split(","):
        for expanded in expand_braces(head + alt + tail):
            if expanded not in out:
                out.append(expanded)
    return out


def has_magic(pattern: str) -> bool:
    """Check whether a glob pattern contains wildcard characters."""
    return _MAGIC.search(pattern) is not None


def pattern_base(pattern: str) -> str:
    """Return the literal directory prefix of a glob (``src/**/*.py`` -> ``src``)."""
    base: list[str] = []
    for part in pattern.split("/")[:-1]:
        if has_magic(part):
            break
        base.append(part)
    return "/".join(base)


def escapes_root(pattern: str) -> bool:
    """Check whether a normalized glob points outside the root it is relative to.

    Absolute patterns and patterns whose ``..`` segments climb above the root
    both escape it.
    """
    if pattern.startswith("/") or Path(pattern).is_absolute():
        return True
    norm = posixpath.normpath(pattern)
    return norm == ".." or norm.startswith("../")


@lru_cache(maxsize=256)
def _compile(patterns: tuple[str, ...]) -> re.Pattern[str]:
    expanded = [p for g in patterns for p in expand_braces(g)]
    if not expanded:
        return re.compile(r"(?!)")
    parts = [glob.translate(p, recursive=True, include_hidden=True, seps="/") for p in expanded]
    return re.compile("|".join(f"(?:{p})" for p in parts))


def compile_globs(globs: Iterable[str]) -> re.Pattern[str]:
    """Compile glob patterns into a single regular expression.

    ``**`` spans any number of directories (including none), ``*`` stays
    within one path segment, dotfiles are matched like any other name and
    brace alternatives are expanded.

    Args:
        globs (Iterable[str]): the glob patterns, relative to the root

    Returns:
        re.Pattern[str]: a pattern to use with ``fullmatch`` on POSIX relative paths
    """
    return _compile(tuple(normalize_globs(globs)))


def match_any_glob(rel: str, globs: Sequence[str]) -> bool:
    """Check if a relative path matches any of the provided glob patterns.

    Args:
        rel (str): the relative path to check, POSIX separators
        globs (Sequence[str]): the glob patterns to match against

    Returns:
        bool: True if `rel` matches any pattern in `globs`, False otherwise
    """
    return compile_globs(globs).fullmatch(rel) is not None


def filter_out_globs(rels: Iterable[str], globs: Sequence[str]) -> list[str]:
    """Drop every relative path that matches one of `globs`."""
    rx = compile_globs(globs)
    return [r for r in rels if rx.fullmatch(r) is None]


def walk_files(root: Path, base: str = "", prune: frozenset[str] = frozenset()) -> Iterator[str]:
    """Walk the directory tree under `root / base` and yield relative file paths.

    Args:
        root (Path): the monitored root
        base (str): directory, relative to root, to start from
        prune (frozenset[str]): directory names never descended into

    Yields:
        str: POSIX paths of regular files, relative to `root`
    """
    start = root / base if base else root
    if not start.is_dir():
        return
    for current, dirs, files in os.walk(start):
        dirs[:] = [d for d in dirs if d not in prune]
        cur = Path(current)
        for f in files:
            p = cur / f
            if is_regular_file(p):
                yield relpath(p, root)


def scan_globs(root: Path, globs: Sequence[str], prune: frozenset[str] = frozenset()) -> list[str]:
    """Expand glob patterns against `root`, files only, dotfiles included.

    Walks start at each pattern's literal base directory; literal patterns are
    checked directly without walking. Patterns reaching outside `root` are
    skipped with a warning.

    Args:
        root (Path): the monitored root
        globs (Sequence[str]): the glob patterns, relative to root
        prune (frozenset[str]): directory names skipped while walking

    Returns:
        list[str]: the sorted, de-duplicated POSIX relative paths matched
    """
    found: set[str] = set()
    by_base: dict[str, list[str]] = {}
    for g in normalize_globs(globs):
        for pat in expand_braces(g):
            if escapes_root(pat):
                logger.warning("glob_outside_root", pattern=pat)
                continue
            if not has_magic(pat):
                if is_regular_file(root / pat):
                    found.add(pat)
                continue
            by_base.setdefault(pattern_base(pat), []).append(pat)

    # Fold every base into its closest already-walked ancestor.
    walks: dict[str, list[str]] = {}
    for base in sorted(by_base, key=len):
        owner = next((w for w in walks if not w or base == w or base.startswith(w + "/")), None)
        walks.setdefault(owner if owner is not None else base, []).extend(by_base[base])

    for base, pats in walks.items():
        rx = compile_globs(pats)
        found.update(rel for rel in walk_files(root, base, prune) if rx.fullmatch(rel))
    return sorted(found)


def is_regular_file(path: Path) -> bool:
    """Check if a file is regular.

    Args:
        path (Path): path to test.

    Returns:
        bool: True if the file is regular, False otherwise.
    """
    try:
        st = path.stat()
    except OSError:
        return False
    return stat.S_ISREG(st.st_mode)


def is_binary(path: Path, nbytes: int = BINARY_SNIFF_BYTES) -> bool:
    """Check whether the first `nbytes` of a file contain a null byte.

    Args:
        path (Path): path to test.
        nbytes (int, optional): number of bytes sampled. Defaults to 8 KiB.

    Returns:
        bool: True when a null byte is present.

    Raises:
        OSError: when the file cannot be opened or read.
    """
    with path.open("rb") as f:
        chunk = f.read(nbytes)
    return b"\0" in chunk


def content_skip_reason(path: Path, max_bytes: int) -> str | None:
    """Run the per-file safety checks on `path`.

    Args:
        path (Path): absolute path of the candidate file
        max_bytes (int): largest accepted size in bytes

    Returns:
        str | None: None when the file is safe to include, else the reason it is
            dropped (``"too_large"``, ``"binary"`` or ``"unreadable"``)
    """
    try:
        size = path.stat().st_size
        if size > max_bytes:
            return "too_large"
        if is_binary(path):
            return "binary"
    except OSError:
        return "unreadable"
    return None


def load_ignore_spec(root: Path) -> pathspec.GitIgnoreSpec | None:
    """Parse the root ignore file with git semantics.

    Args:
        root (Path): the monitored root

    Returns:
        pathspec.GitIgnoreSpec | None: the compiled rules, or None when the
            root has no ignore file or it cannot be read
    """
    ignore_file = root / IGNORE_FILE
    try:
        lines = ignore_file.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("ignore_file_unreadable", path=str(ignore_file), error=str(e))
        return None
    return pathspec.GitIgnoreSpec.from_lines(lines)


def read_text(path: Path) -> str:
    """Read a file as UTF-8 text, replacing undecodable bytes."""
    return path.read_text(encoding="utf-8", errors="replace")


def build_tree_lines(rel_paths: Iterable[str]) -> list[str]:
    """Build a visual tree representation of file paths.

    At every level directories come before files, each group sorted
    lexicographically; directories are suffixed with ``/``.

    Args:
        rel_paths (Iterable[str]): file paths relative to the root, using POSIX separators (e.g. "src/main.py")

    Returns:
        list[str]: a list of strings representing the tree structure, suitable for printing
    """
    tree: dict[str, Any] = {}
    for rp in rel_paths:
        rp2 = rp.strip().strip("/").replace("\\", "/")
        if not rp2:
            continue
        cur = tree
        for part in rp2.split("/"):
            cur = cur.setdefault(part, {})

    lines: list[str] = []

    def walk(node: dict[str, Any], prefix: str) -> None:
        entries = sorted(node.items(), key=lambda kv: (not kv[1], kv[0]))
        for idx, (name, child) in enumerate(entries):
            last = idx == len(entries) - 1
            branch = "└── " if last else "├── "
            lines.append(prefix + branch + name + ("/" if child else ""))
            if child:
                walk(child, prefix + ("    " if last else "│   "))

    walk(tree, "")
    return lines
