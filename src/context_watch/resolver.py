from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

from context_watch.config import HARDCODED_EXCLUDE_DIRS, HARDCODED_EXCLUDES
from context_watch.exceptions import FileLimitExceededError
from context_watch.file_manipulation import (
    content_skip_reason,
    filter_out_globs,
    normalize_abs_path,
    scan_globs,
)
from context_watch.logging import logger

if TYPE_CHECKING:
    import pathspec

    from context_watch.config import GlobalSettings, Profile

CONTENT_CHECK_WORKERS = 8


class FileResolver:
    """Turn a profile's glob rules into the concrete file list of one build.

    Stages run in a fixed order: scan includes, drop excludes, drop ignored
    paths, merge force-includes, drop the profile's own output, enforce the
    file count limit, then drop oversized, binary and vanished files.
    """

    def __init__(
        self,
        root: Path,
        profile: Profile,
        settings: GlobalSettings,
        ignore_spec: pathspec.GitIgnoreSpec | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.profile = profile
        self.settings = settings
        self.ignore_spec = ignore_spec

    def resolve(self) -> list[str]:
        """Resolve the profile against the root.

        Returns:
            list[str]: sorted, de-duplicated POSIX relative paths

        Raises:
            FileLimitExceededError: when more than ``max_total_files`` survive
                the filters before the content checks.
        """
        files = self._scan_included()
        files = self._apply_exclude(files)
        if self.profile.options.use_git_ignore and self.ignore_spec is not None:
            files = self._apply_ignore(files, self.ignore_spec)
        files = self._merge_force_include(files)
        files = self._exclude_output_file(files)

        limit = self.settings.max_total_files
        if len(files) > limit:
            raise FileLimitExceededError(count=len(files), limit=limit)

        files = self._filter_by_content(files)
        return sorted(files)

    def watch_patterns(self) -> list[str]:
        """Globs the scheduler should watch: includes plus force-includes, unfiltered."""
        return [*self.profile.include, *self.profile.force_include]

    def _scan_included(self) -> list[str]:
        # Pruned directories would be dropped by the hardcoded excludes anyway.
        return scan_globs(self.root, self.profile.include, prune=HARDCODED_EXCLUDE_DIRS)

    def _apply_exclude(self, files: list[str]) -> list[str]:
        return filter_out_globs(files, [*self.profile.exclude, *HARDCODED_EXCLUDES])

    @staticmethod
    def _apply_ignore(files: list[str], spec: pathspec.GitIgnoreSpec) -> list[str]:
        return [f for f in files if not spec.match_file(f)]

    def _merge_force_include(self, files: list[str]) -> list[str]:
        if not self.profile.force_include:
            return files
        merged = dict.fromkeys(files)
        merged.update(dict.fromkeys(scan_globs(self.root, self.profile.force_include)))
        return list(merged)

    def _exclude_output_file(self, files: list[str]) -> list[str]:
        output = normalize_abs_path(self.root / self.profile.output_file)
        return [f for f in files if normalize_abs_path(self.root / f) != output]

    def _filter_by_content(self, files: list[str]) -> list[str]:
        if not files:
            return []
        max_bytes = self.settings.max_file_size_bytes
        with ThreadPoolExecutor(max_workers=CONTENT_CHECK_WORKERS) as pool:
            reasons = list(pool.map(lambda f: content_skip_reason(self.root / f, max_bytes), files))
        kept: list[str] = []
        for f, reason in zip(files, reasons, strict=True):
            if reason is None:
                kept.append(f)
            else:
                logger.info("file_skipped", path=f, reason=reason)
        return kept
