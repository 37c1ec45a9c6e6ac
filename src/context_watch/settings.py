from __future__ import annotations

import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from context_watch.config import CONFIG_PATH

ENV_FILE = find_dotenv(usecwd=True)
if ENV_FILE:
    load_dotenv(ENV_FILE, override=False)

ENV_PREFIX = "CONTEXT_WATCH_"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


class Settings(BaseModel):
    """Runtime settings of the context-watch command line."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    root: Path = Field(default_factory=lambda: Path(_env("ROOT") or Path.cwd()), description="Monitored root.")
    config: str = Field(default_factory=lambda: _env("CONFIG", CONFIG_PATH), description="Configuration file.")
    log_file: str = Field(default_factory=lambda: _env("LOG_FILE"), description="Log file path.")
    command: str = Field(default="build", description="Subcommand to run.")
    profile: str = Field(default="", description="Profile name, defaults to the active one.")
    overwrite: bool = Field(default=False, description="Let init replace an existing configuration.")

    @property
    def config_path(self) -> Path:
        """Configuration file path, anchored at the root when relative."""
        path = Path(self.config or CONFIG_PATH)
        return path if path.is_absolute() else self.root / path
