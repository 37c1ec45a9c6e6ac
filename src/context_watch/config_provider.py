"""Load, validate and watch the project configuration file."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from pydantic import ValidationError

from context_watch.config import CONFIG_PATH, ContextConfig, default_config
from context_watch.exceptions import ConfigurationError
from context_watch.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from context_watch.change_source import ChangeSource, WatchHandle
    from context_watch.config import Profile

    ReloadCallback = Callable[[ContextConfig | None, ConfigurationError | None], None]

YAML_SUFFIXES = {".yaml", ".yml"}


class ConfigProvider:
    """Owns the configuration file of one monitored root.

    ``load()`` re-reads and validates the file on every call and remembers
    the last good configuration for ``get_profile()``.
    """

    def __init__(self, root: Path, path: Path | str | None = None) -> None:
        self.root = Path(root).resolve()
        p = Path(path) if path else Path(CONFIG_PATH)
        self.path = p if p.is_absolute() else self.root / p
        self._current: ContextConfig | None = None

    @property
    def current(self) -> ContextConfig | None:
        return self._current

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> ContextConfig:
        """Read and validate the configuration file.

        Returns:
            ContextConfig: the validated configuration

        Raises:
            ConfigurationError: when the file is missing, unparsable or invalid.
        """
        try:
            config = ContextConfig.model_validate(self._read_raw())
        except ConfigurationError:
            self._current = None
            raise
        except ValidationError as e:
            self._current = None
            raise ConfigurationError(path=self.path, reason=_summarize(e)) from e
        self._current = config
        return config

    def get_profile(self, name: str) -> Profile | None:
        """Profile `name` of the last successfully loaded configuration."""
        if self._current is None:
            return None
        return self._current.get_profile(name)

    def create_default(self, *, overwrite: bool = False) -> Path:
        """Write the starter configuration and return its path.

        Raises:
            ConfigurationError: when a configuration already exists and
                `overwrite` is False.
        """
        if self.exists() and not overwrite:
            raise ConfigurationError(path=self.path, reason="configuration already exists")
        data = default_config().model_dump(mode="json", by_alias=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.suffix.lower() in YAML_SUFFIXES:
            text = yaml.safe_dump(data, sort_keys=False)
        else:
            text = json.dumps(data, indent=2) + "\n"
        self.path.write_text(text, encoding="utf-8")
        logger.info("config_created", path=str(self.path))
        return self.path

    def watch(self, source: ChangeSource, callback: ReloadCallback) -> WatchHandle:
        """Reload on every change of the configuration file and report the outcome.

        `callback` receives ``(config, None)`` after a good reload and
        ``(None, error)`` when the file became invalid or was deleted. It runs
        on the change source's thread.
        """
        rel = self.path.relative_to(self.root).as_posix() if self.path.is_relative_to(self.root) else self.path.name
        root = self.root if self.path.is_relative_to(self.root) else self.path.parent

        def on_change(_path: Path) -> None:
            try:
                config = self.load()
            except ConfigurationError as e:
                logger.error("config_reload_failed", path=str(self.path), error=str(e))
                callback(None, e)
            else:
                logger.info("config_reloaded", path=str(self.path), profiles=len(config.profiles))
                callback(config, None)

        return source.watch(root, [rel], on_change)

    def _read_raw(self) -> object:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigurationError(path=self.path, reason="file not found") from e
        except OSError as e:
            raise ConfigurationError(path=self.path, reason=str(e)) from e

        try:
            if self.path.suffix.lower() in YAML_SUFFIXES:
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(path=self.path, reason=f"parse error: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(path=self.path, reason="top level must be a mapping")
        return data


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
