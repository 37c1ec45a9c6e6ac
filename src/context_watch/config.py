from __future__ import annotations

from datetime import datetime  # noqa: TC003
from enum import StrEnum
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

CONFIG_PATH = ".context/config.json"
IGNORE_FILE = ".gitignore"

DEFAULT_DEBOUNCE_MS = 3000
DEFAULT_MAX_FILE_SIZE_KB = 1024
DEFAULT_MAX_TOTAL_FILES = 500
DEFAULT_TOKENIZER_MODEL = "gpt-4o"

# Directories never worth feeding to a model, matched at any depth.
HARDCODED_EXCLUDE_DIRS = frozenset({".git", "node_modules", ".venv", "venv", "__pycache__", "dist", "build"})
HARDCODED_EXCLUDES = [f"**/{d}/**" for d in sorted(HARDCODED_EXCLUDE_DIRS)]

EXT2LANG: dict[str, str] = {
    ".bash": "bash",
    ".c": "c",
    ".cc": "cpp",
    ".cfg": "ini",
    ".conf": "ini",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".css": "css",
    ".cxx": "cpp",
    ".go": "go",
    ".h": "c",
    ".hpp": "cpp",
    ".htm": "html",
    ".html": "html",
    ".ini": "ini",
    ".java": "java",
    ".js": "javascript",
    ".json": "json",
    ".jsx": "jsx",
    ".kt": "kotlin",
    ".markdown": "markdown",
    ".md": "markdown",
    ".mjs": "javascript",
    ".php": "php",
    ".py": "python",
    ".rb": "ruby",
    ".rs": "rust",
    ".scss": "scss",
    ".sh": "bash",
    ".sql": "sql",
    ".swift": "swift",
    ".toml": "toml",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".txt": "text",
    ".vue": "vue",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".zsh": "bash",
}

NAME2LANG: dict[str, str] = {
    "dockerfile": "dockerfile",
    "makefile": "makefile",
}


class OutputFormat(StrEnum):
    """Output document flavours.

    MARKDOWN is the lightweight markup document (headers and fenced blocks),
    XML the structured one (attributed elements and CDATA sections).
    """

    MARKDOWN = "markdown"
    XML = "xml"


class _ConfigModel(BaseModel):
    """Base for records read from the configuration file (camelCase on disk)."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ProfileOptions(_ConfigModel):
    """Rendering and filtering switches of a profile."""

    use_git_ignore: bool = Field(default=True, description="Filter paths through the root .gitignore.")
    remove_comments: bool = Field(default=False, description="Reserved, currently a no-op.")
    show_token_count: bool = Field(default=True, description="Report the token count in the header.")
    show_file_tree: bool = Field(default=True, description="Render the project tree section.")
    preamble: str = Field(default="", description="Free text instructions placed before the files.")
    output_format: OutputFormat = Field(default=OutputFormat.MARKDOWN, description="Artifact format.")


class Profile(_ConfigModel):
    """A named set of include/exclude/force-include rules and rendering options.

    Attributes:
        name: Unique key of the profile.
        description: Free text shown to humans.
        output_file: Artifact path, relative to the monitored root.
        include: Globs selecting candidate files.
        exclude: Globs removing candidates.
        force_include: Globs bypassing exclude and ignore rules (not safety limits).
        options: Rendering and filtering switches.
    """

    name: str = Field(..., min_length=1, description="Unique profile name")
    description: str = Field(default="", description="Profile description")
    output_file: str = Field(..., min_length=1, description="Artifact path relative to the root")
    include: list[str] = Field(default_factory=list, description="Include globs")
    exclude: list[str] = Field(default_factory=list, description="Exclude globs")
    force_include: list[str] = Field(default_factory=list, description="Force-include globs")
    options: ProfileOptions = Field(default_factory=ProfileOptions)

    @field_validator("output_file")
    @classmethod
    def _relative_output(cls, value: str) -> str:
        posix = value.replace("\\", "/")
        if PurePosixPath(posix).is_absolute():
            msg = f"outputFile must be relative to the project root, got {value!r}"
            raise ValueError(msg)
        return posix


class GlobalSettings(_ConfigModel):
    """Settings shared by every profile of a configuration."""

    debounce_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)
    max_file_size_kb: int = Field(default=DEFAULT_MAX_FILE_SIZE_KB, gt=0, alias="maxFileSizeKB")
    max_total_files: int = Field(default=DEFAULT_MAX_TOTAL_FILES, gt=0)
    tokenizer_model: str = Field(default=DEFAULT_TOKENIZER_MODEL)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_kb * 1024


class ContextConfig(_ConfigModel):
    """Whole configuration file: global settings plus the profile list."""

    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)
    profiles: list[Profile] = Field(default_factory=list)
    active_profile: str = Field(default="", description="Profile used when none is named")
    watcher_enabled: bool = Field(default=False, description="Start watching on load")

    @model_validator(mode="after")
    def _unique_profile_names(self) -> ContextConfig:
        seen: set[str] = set()
        for profile in self.profiles:
            if profile.name in seen:
                msg = f"duplicate profile name {profile.name!r}"
                raise ValueError(msg)
            seen.add(profile.name)
        return self

    def get_profile(self, name: str) -> Profile | None:
        """Return the profile called `name`, or None."""
        return next((p for p in self.profiles if p.name == name), None)


class FileData(BaseModel):
    """A resolved file read for rendering."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="File path relative to the monitored root")
    content: str = Field(..., description="File text")
    size: int = Field(..., ge=0, description="File size in bytes")
    language: str = Field(default="", description="Fenced code block language name")


class BuildStats(BaseModel):
    """Outcome of one successful build, handed to listeners."""

    model_config = ConfigDict(frozen=True)

    file_count: int = Field(..., ge=0)
    total_size_bytes: int = Field(..., ge=0)
    token_count: int = Field(..., ge=0)
    timestamp: datetime


def default_config() -> ContextConfig:
    """Build the starter configuration written by `context-watch init`."""
    return ContextConfig(
        active_profile="default",
        global_settings=GlobalSettings(),
        profiles=[
            Profile(
                name="default",
                description="Default context profile",
                output_file=".context/context.md",
                include=["src/**/*.{ts,js,py,md}", "package.json", "pyproject.toml", "README.md"],
                exclude=["**/*.test.ts"],
                options=ProfileOptions(preamble="Project context for LLM."),
            ),
        ],
    )
