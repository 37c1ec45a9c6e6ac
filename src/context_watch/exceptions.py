from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ContextWatchError(Exception):
    """Base exception for errors in the context_watch package."""

    def __str__(self) -> str:
        return self.message

    @property
    def message(self) -> str:
        """Human readable description of the error."""
        return self.__doc__ or type(self).__name__


@dataclass(frozen=True)
class ConfigurationError(ContextWatchError):
    """Raised when the configuration file is missing, malformed or invalid."""

    path: Path
    reason: str

    @property
    def message(self) -> str:
        return f"Invalid configuration {self.path}: {self.reason}"


@dataclass(frozen=True)
class ProfileNotFoundError(ContextWatchError):
    """Raised when a profile name does not exist in the configuration."""

    name: str

    @property
    def message(self) -> str:
        if not self.name:
            return "No profile selected for build."
        return f'Profile "{self.name}" not found.'


@dataclass(frozen=True)
class FileLimitExceededError(ContextWatchError):
    """Raised when a resolution yields more files than allowed."""

    count: int
    limit: int

    @property
    def message(self) -> str:
        return (
            f"Total files ({self.count}) exceeds limit ({self.limit}). "
            "Adjust your 'include'/'exclude' patterns."
        )


@dataclass(frozen=True)
class UnsupportedFormatError(ContextWatchError):
    """Raised when a profile asks for an output format nobody renders."""

    format: str

    @property
    def message(self) -> str:
        return f"Unsupported output format: {self.format!r}"


@dataclass(frozen=True)
class ArtifactWriteError(ContextWatchError):
    """Raised when the context artifact cannot be written."""

    path: Path
    reason: str

    @property
    def message(self) -> str:
        return f"Cannot write {self.path}: {self.reason}"


@dataclass(frozen=True)
class StaleBuildError(ContextWatchError):
    """Raised when a build outlived its session and skipped its write."""

    generation: int

    @property
    def message(self) -> str:
        return f"Build from superseded session {self.generation} discarded."
