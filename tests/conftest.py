from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Any

import pytest

from context_watch.config import CONFIG_PATH
from context_watch.tokens import TokenEstimator

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence
    from pathlib import Path

    from pytest_mock import MockerFixture


@pytest.fixture(autouse=True)
def offline_tokenizer(mocker: MockerFixture) -> Iterator[None]:
    """Keep tiktoken from downloading encodings: every estimator is heuristic."""
    mocker.patch("context_watch.tokens.tiktoken.encoding_for_model", side_effect=KeyError("offline"))
    mocker.patch("context_watch.tokens.tiktoken.get_encoding", side_effect=ValueError("offline"))
    TokenEstimator.clear_cache()
    yield
    TokenEstimator.clear_cache()


class FakeHandle:
    """Watch handle whose `join` blocks until `release` is set."""

    def __init__(self) -> None:
        self.closed = False
        self.joined = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def close(self) -> None:
        self.closed = True

    def join(self, timeout: float = 5.0) -> None:
        self.release.wait(timeout)
        self.joined.set()


class FakeChangeSource:
    """Records watch registrations; tests fire events through the callbacks."""

    def __init__(self) -> None:
        self.watches: list[tuple[list[str], Callable[[Path], None], FakeHandle]] = []

    def watch(self, root: Path, patterns: Sequence[str], callback: Callable[[Path], None]) -> FakeHandle:
        del root
        handle = FakeHandle()
        self.watches.append((list(patterns), callback, handle))
        return handle

    @property
    def open_watches(self) -> list[tuple[list[str], Callable[[Path], None], FakeHandle]]:
        return [w for w in self.watches if not w[2].closed]


@pytest.fixture
def change_source() -> FakeChangeSource:
    return FakeChangeSource()


@pytest.fixture
def write_files() -> Callable[[Path, dict[str, str | bytes]], None]:
    def write(root: Path, files: dict[str, str | bytes]) -> None:
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")

    return write


def profile_dict(name: str = "default", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": name,
        "outputFile": ".context/out.md",
        "include": ["src/**/*.ts"],
        "exclude": ["**/*.test.ts"],
        "forceInclude": [],
        "options": {"useGitIgnore": True, "outputFormat": "markdown"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def write_config() -> Callable[..., Path]:
    """Write ``.context/config.json`` under a root.

    Keyword arguments: ``profiles`` (list of dicts, defaults to one
    ``default`` profile), ``active`` and any global setting in camelCase.
    """

    def write(
        root: Path,
        *,
        profiles: list[dict[str, Any]] | None = None,
        active: str = "default",
        watcher_enabled: bool = False,
        **global_settings: Any,
    ) -> Path:
        data = {
            "globalSettings": {"debounceMs": 0, **global_settings},
            "profiles": profiles if profiles is not None else [profile_dict()],
            "activeProfile": active,
            "watcherEnabled": watcher_enabled,
        }
        path = root / CONFIG_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    return write


@pytest.fixture
def make_profile() -> Callable[..., dict[str, Any]]:
    return profile_dict
