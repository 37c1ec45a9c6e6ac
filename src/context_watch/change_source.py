"""File-system change notifications scoped to glob patterns under a root."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from context_watch.file_manipulation import compile_globs, relpath
from context_watch.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    ChangeCallback = Callable[[Path], None]

_RELEVANT_EVENTS = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED})
WATCH_JOIN_TIMEOUT = 5.0


class WatchHandle(Protocol):
    """A registered watch. `close` only signals the stop; `join` waits for it."""

    def close(self) -> None: ...

    def join(self, timeout: float = WATCH_JOIN_TIMEOUT) -> None: ...


class ChangeSource(Protocol):
    """Anything able to report create/modify/delete events for globbed files."""

    def watch(self, root: Path, patterns: Sequence[str], callback: ChangeCallback) -> WatchHandle: ...


class GlobEventHandler(FileSystemEventHandler):
    """Forward file events whose root-relative path matches one of the globs.

    Callbacks run on the observer thread.
    """

    def __init__(self, root: Path, patterns: Sequence[str], callback: ChangeCallback) -> None:
        super().__init__()
        self.root = root
        self.matcher = compile_globs(patterns)
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        paths = [event.src_path]
        if event.event_type == EVENT_TYPE_MOVED:
            paths.append(event.dest_path)
        for raw in paths:
            path = Path(os.fsdecode(raw))
            if self.matcher.fullmatch(relpath(path, self.root)):
                self.callback(path)


class ObserverWatch:
    """A running watchdog observer.

    `close` asks the observer to stop and returns at once. The thread can take
    a second or so to wind down; `join` waits for it and may block.
    """

    def __init__(self, observer: Observer) -> None:
        self._observer = observer
        self._lock = threading.Lock()
        self._closed = False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._observer.stop()

    def join(self, timeout: float = WATCH_JOIN_TIMEOUT) -> None:
        if self._observer.is_alive() and threading.current_thread() is not self._observer:
            self._observer.join(timeout=timeout)


def join_watches(handles: Iterable[WatchHandle], timeout: float = WATCH_JOIN_TIMEOUT) -> None:
    """Wait for closed watches to wind down. Blocking; failures are logged."""
    for handle in handles:
        try:
            handle.join(timeout)
        except Exception:  # noqa: BLE001
            logger.exception("watch_join_failed")


class WatchdogChangeSource:
    """ChangeSource backed by one recursive watchdog observer per watch."""

    def watch(self, root: Path, patterns: Sequence[str], callback: ChangeCallback) -> ObserverWatch:
        root = Path(root).resolve()
        observer = Observer()
        observer.schedule(GlobEventHandler(root, patterns, callback), str(root), recursive=True)
        observer.daemon = True
        observer.start()
        logger.debug("watch_started", root=str(root), patterns=list(patterns))
        return ObserverWatch(observer)
