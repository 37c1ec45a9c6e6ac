"""Build scheduler: the watch, debounce and build state machine.

The scheduler lives on one asyncio event loop. Every external event (a
command from the host, a file change, a timer, a configuration reload) is a
message from a closed set of inputs handled one at a time by
``BuildScheduler.dispatch``. Threads other than the loop's hand messages
over with ``BuildScheduler.post``.

Builds run in a worker thread. At most one is in flight; requests arriving
meanwhile collapse into a single trailing rebuild. Each build carries the
generation of the session that started it and never writes its artifact or
publishes stats once that session has been replaced.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from context_watch.change_source import join_watches
from context_watch.config import IGNORE_FILE
from context_watch.exceptions import ConfigurationError, ContextWatchError, ProfileNotFoundError, StaleBuildError
from context_watch.file_manipulation import load_ignore_spec, normalize_abs_path
from context_watch.logging import logger
from context_watch.output_construction import build_context, write_artifact
from context_watch.resolver import FileResolver
from context_watch.tokens import TokenEstimator

if TYPE_CHECKING:
    from collections.abc import Callable

    import pathspec

    from context_watch.change_source import ChangeSource, WatchHandle
    from context_watch.config import BuildStats, ContextConfig, GlobalSettings, OutputFormat, Profile
    from context_watch.config_provider import ConfigProvider

    BuildFn = Callable[[Path, "Session", Callable[[], bool]], BuildStats]
    EstimatorFactory = Callable[[str], TokenEstimator]

DEFAULT_REBUILD_DELAY = 0.1


class WatcherState(StrEnum):
    IDLE = "Idle"
    WATCHING = "Watching"
    DEBOUNCING = "Debouncing"
    BUILDING = "Building"


@dataclass(frozen=True)
class StateChange:
    """Payload of state notifications."""

    state: WatcherState
    profile_name: str | None
    file_count: int | None
    output_format: OutputFormat | None


@dataclass(frozen=True)
class Notice:
    """A short message for the host's error surface."""

    level: Literal["error", "warning"]
    message: str


# ------------------------------ Inputs --------------------------------------


@dataclass(frozen=True)
class Start:
    profile_name: str


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class ChangeDetected:
    path: Path


@dataclass(frozen=True)
class TimerFired:
    generation: int


@dataclass(frozen=True)
class BuildOnceRequested:
    profile_name: str | None = None


@dataclass(frozen=True)
class ConfigReloaded:
    config: ContextConfig | None
    error: ConfigurationError | None = None


@dataclass(frozen=True)
class IgnoreFileChanged:
    pass


SchedulerInput = Start | Stop | ChangeDetected | TimerFired | BuildOnceRequested | ConfigReloaded | IgnoreFileChanged


# ------------------------------ Session & build -----------------------------


@dataclass(frozen=True)
class Session:
    """Everything one watch session shares with its builds.

    Replaced as a whole, never mutated. `generation` identifies the session
    across replacements (a reloaded ignore file keeps it).
    """

    generation: int
    profile: Profile
    settings: GlobalSettings
    estimator: TokenEstimator
    ignore_spec: pathspec.GitIgnoreSpec | None
    watching: bool


@dataclass(frozen=True)
class BuildResult:
    stats: BuildStats | None
    error: Exception | None = None


def run_build_cycle(root: Path, session: Session, is_current: Callable[[], bool]) -> BuildStats:
    """Resolve, assemble and write the artifact of one build.

    Args:
        root (Path): the monitored root
        session (Session): the session the build belongs to
        is_current (Callable[[], bool]): tells whether the session is still the
            active one; checked right before writing

    Returns:
        BuildStats: stats of the written artifact

    Raises:
        StaleBuildError: when the session was replaced before the write.
    """
    resolver = FileResolver(root, session.profile, session.settings, session.ignore_spec)
    files = resolver.resolve()
    logger.info("files_resolved", profile=session.profile.name, count=len(files))

    built = build_context(resolver.root, session.profile, files, session.estimator)
    if not is_current():
        raise StaleBuildError(generation=session.generation)
    write_artifact(resolver.root / session.profile.output_file, built.text)
    return built.stats


# ------------------------------ Scheduler -----------------------------------


class BuildScheduler:
    """Arbitrates watching, debouncing and building for one monitored root."""

    def __init__(
        self,
        root: Path,
        config_provider: ConfigProvider,
        change_source: ChangeSource,
        *,
        build_fn: BuildFn = run_build_cycle,
        estimator_factory: EstimatorFactory = TokenEstimator.for_model,
        rebuild_delay: float = DEFAULT_REBUILD_DELAY,
    ) -> None:
        self.root = Path(root).resolve()
        self._provider = config_provider
        self._source = change_source
        self._build_fn = build_fn
        self._estimator_factory = estimator_factory
        self._rebuild_delay = rebuild_delay

        self._loop: asyncio.AbstractEventLoop | None = None
        self._state = WatcherState.IDLE
        self._session: Session | None = None
        self._generation = 0
        self._watches: list[WatchHandle] = []
        self._debounce: asyncio.TimerHandle | None = None
        self._rebuild: asyncio.TimerHandle | None = None
        self._building = False
        self._build_pending = False
        self._build_task: asyncio.Task[BuildResult] | None = None
        self._joining: set[asyncio.Task[None]] = set()
        self._last_stats: BuildStats | None = None

        self._state_listeners: list[Callable[[StateChange], None]] = []
        self._build_listeners: list[Callable[[BuildStats], None]] = []
        self._notice_listeners: list[Callable[[Notice], None]] = []

        self._handlers: dict[type, Callable[..., asyncio.Task[BuildResult] | None]] = {
            Start: self._on_start,
            Stop: self._on_stop,
            ChangeDetected: self._on_change,
            TimerFired: self._on_timer,
            BuildOnceRequested: self._on_build_once,
            ConfigReloaded: self._on_config_reloaded,
            IgnoreFileChanged: self._on_ignore_file_changed,
        }

    # --- read-only view -----------------------------------------------------

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def current_profile(self) -> Profile | None:
        return self._session.profile if self._session else None

    @property
    def current_stats(self) -> BuildStats | None:
        return self._last_stats

    @property
    def debounce_pending(self) -> bool:
        return self._debounce is not None

    # --- listeners ----------------------------------------------------------

    def on_state_change(self, callback: Callable[[StateChange], None]) -> Callable[[], None]:
        """Register a state listener; returns a function that unregisters it."""
        return _subscribe(self._state_listeners, callback)

    def on_build_finished(self, callback: Callable[[BuildStats], None]) -> Callable[[], None]:
        return _subscribe(self._build_listeners, callback)

    def on_notice(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        return _subscribe(self._notice_listeners, callback)

    # --- host operations ----------------------------------------------------

    def dispatch(self, message: SchedulerInput) -> asyncio.Task[BuildResult] | None:
        """Apply one input to the state machine. Must run on the event loop.

        Returns:
            asyncio.Task[BuildResult] | None: the build started or joined by
                this input, if any
        """
        self._loop = asyncio.get_running_loop()
        return self._handlers[type(message)](message)

    def post(self, message: SchedulerInput) -> None:
        """Thread-safe variant of ``dispatch`` for observer and reload threads."""
        if self._loop is None or self._loop.is_closed():
            logger.warning("scheduler_not_running", message=type(message).__name__)
            return
        self._loop.call_soon_threadsafe(self.dispatch, message)

    def start(self, profile_name: str) -> asyncio.Task[BuildResult] | None:
        """Watch `profile_name` and build it right away.

        Raises:
            ProfileNotFoundError: when the profile does not exist.
            ConfigurationError: when the configuration cannot be loaded.
        """
        return self.dispatch(Start(profile_name))

    def stop(self) -> None:
        self.dispatch(Stop())

    def notify_change(self, path: Path | str) -> None:
        self.dispatch(ChangeDetected(Path(path)))

    async def build_once(self, profile_name: str | None = None) -> BuildStats:
        """Run exactly one build and return its stats.

        Raises:
            ProfileNotFoundError: when no usable profile is given or configured.
            ConfigurationError: when the configuration cannot be loaded.
            ContextWatchError: when the build itself fails.
        """
        task = self.dispatch(BuildOnceRequested(profile_name))
        if task is None:
            msg = "build request was not scheduled"
            raise RuntimeError(msg)
        result = await task
        if result.error is not None:
            raise result.error
        if result.stats is None:
            msg = "build finished without stats"
            raise RuntimeError(msg)
        return result.stats

    def close(self) -> None:
        """Stop and forget every listener."""
        if self._loop is not None and not self._loop.is_closed():
            self.stop()
        else:
            self._teardown()
        self._state_listeners.clear()
        self._build_listeners.clear()
        self._notice_listeners.clear()

    # --- input handlers -----------------------------------------------------

    def _on_start(self, msg: Start) -> asyncio.Task[BuildResult] | None:
        logger.info("watcher_starting", profile=msg.profile_name)
        try:
            config = self._provider.load()
        except ConfigurationError as e:
            self._stop()
            self._notify("error", str(e))
            raise
        profile = config.get_profile(msg.profile_name)
        if profile is None:
            err = ProfileNotFoundError(name=msg.profile_name)
            self._notify("error", str(err))
            raise err
        return self._start_with(config, profile)

    def _on_stop(self, _msg: Stop) -> None:
        self._stop()

    def _on_change(self, msg: ChangeDetected) -> None:
        session = self._session
        if session is None or not session.watching:
            return
        path = msg.path if msg.path.is_absolute() else self.root / msg.path
        if normalize_abs_path(path) == normalize_abs_path(self.root / session.profile.output_file):
            return
        logger.debug("change_detected", path=str(path))
        self._arm_debounce(session)

    def _on_timer(self, msg: TimerFired) -> asyncio.Task[BuildResult] | None:
        if self._session is None or self._session.generation != msg.generation:
            return None
        self._debounce = None
        return self._trigger_build()

    def _on_build_once(self, msg: BuildOnceRequested) -> asyncio.Task[BuildResult]:
        return asyncio.get_running_loop().create_task(self._build_once(msg.profile_name))

    def _on_config_reloaded(self, msg: ConfigReloaded) -> asyncio.Task[BuildResult] | None:
        config = msg.config
        if config is None:
            self._stop()
            detail = f" ({msg.error})" if msg.error else ""
            self._notify("error", f"Configuration is invalid. Watching stopped.{detail}")
            return None

        session = self._session
        if session is not None and session.watching:
            profile = config.get_profile(session.profile.name)
            if profile is not None:
                logger.info("watcher_restarting", profile=profile.name)
                return self._start_with(config, profile)
            self._stop()
            self._notify("warning", f'Profile "{session.profile.name}" no longer exists. Watching stopped.')
            return None

        if session is None and config.watcher_enabled and config.active_profile:
            profile = config.get_profile(config.active_profile)
            if profile is not None:
                return self._start_with(config, profile)
        return None

    def _on_ignore_file_changed(self, _msg: IgnoreFileChanged) -> None:
        session = self._session
        if session is None or not session.watching or not session.profile.options.use_git_ignore:
            return
        self._session = dataclasses.replace(session, ignore_spec=load_ignore_spec(self.root))
        logger.info("ignore_file_reloaded", present=self._session.ignore_spec is not None)
        self._arm_debounce(self._session)

    # --- session lifecycle --------------------------------------------------

    def _start_with(self, config: ContextConfig, profile: Profile) -> asyncio.Task[BuildResult] | None:
        self._teardown()
        session = self._open_session(config, profile, watching=True)
        self._session = session

        patterns = FileResolver(self.root, profile, session.settings).watch_patterns()
        self._watches.append(self._source.watch(self.root, patterns, self._post_change))
        if profile.options.use_git_ignore:
            self._watches.append(self._source.watch(self.root, [IGNORE_FILE], self._post_ignore_change))
        logger.info("watchers_started", profile=profile.name, patterns=len(patterns))

        self._set_state(WatcherState.WATCHING)
        return self._trigger_build()

    def _open_session(self, config: ContextConfig, profile: Profile, *, watching: bool) -> Session:
        self._generation += 1
        settings = config.global_settings
        return Session(
            generation=self._generation,
            profile=profile,
            settings=settings,
            estimator=self._estimator_factory(settings.tokenizer_model),
            ignore_spec=load_ignore_spec(self.root) if profile.options.use_git_ignore else None,
            watching=watching,
        )

    def _teardown(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._rebuild is not None:
            self._rebuild.cancel()
            self._rebuild = None
        handles, self._watches = self._watches, []
        for handle in handles:
            try:
                handle.close()
            except Exception:  # noqa: BLE001
                logger.exception("watch_close_failed")
        if handles:
            self._join_in_background(handles)
        self._session = None
        self._build_pending = False
        self._generation += 1

    def _join_in_background(self, handles: list[WatchHandle]) -> None:
        # Observer threads take up to a second to exit; never wait on the loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            join_watches(handles)
            return
        task = loop.create_task(asyncio.to_thread(join_watches, handles))
        self._joining.add(task)
        task.add_done_callback(self._joining.discard)

    def _stop(self) -> None:
        if self._state != WatcherState.IDLE:
            logger.info("watcher_stopping")
        self._teardown()
        self._set_state(WatcherState.IDLE)

    def _post_change(self, path: Path) -> None:
        self.post(ChangeDetected(path))

    def _post_ignore_change(self, _path: Path) -> None:
        self.post(IgnoreFileChanged())

    def _is_current(self, session: Session) -> bool:
        current = self._session
        return current is not None and current.generation == session.generation

    # --- building -----------------------------------------------------------

    def _arm_debounce(self, session: Session) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
        delay = session.settings.debounce_ms / 1000
        self._debounce = asyncio.get_running_loop().call_later(delay, self.dispatch, TimerFired(session.generation))
        if not self._building:
            self._set_state(WatcherState.DEBOUNCING)

    def _trigger_build(self) -> asyncio.Task[BuildResult] | None:
        if self._building:
            self._build_pending = True
            logger.debug("build_pending")
            return self._build_task
        session = self._session
        if session is None:
            return None
        self._building = True
        self._set_state(WatcherState.BUILDING)
        self._build_task = asyncio.get_running_loop().create_task(self._run_build(session))
        return self._build_task

    async def _run_build(self, session: Session) -> BuildResult:
        logger.info("build_started", profile=session.profile.name, generation=session.generation)
        try:
            stats = await asyncio.to_thread(self._build_fn, self.root, session, lambda: self._is_current(session))
        except StaleBuildError as e:
            logger.info("build_discarded", profile=session.profile.name, generation=session.generation)
            result = BuildResult(None, e)
        except Exception as e:
            logger.exception("build_failed", profile=session.profile.name)
            self._notify("error", f"Context build failed: {e}")
            result = BuildResult(None, e)
        else:
            if self._is_current(session):
                self._last_stats = stats
                logger.info(
                    "build_finished",
                    profile=session.profile.name,
                    files=stats.file_count,
                    tokens=stats.token_count,
                )
                _emit(self._build_listeners, stats)
                result = BuildResult(stats)
            else:
                logger.info("build_discarded", profile=session.profile.name, generation=session.generation)
                result = BuildResult(None, StaleBuildError(generation=session.generation))
        finally:
            self._building = False
            self._after_build()
        return result

    def _after_build(self) -> None:
        if self._build_pending:
            self._build_pending = False
            self._rebuild = asyncio.get_running_loop().call_later(self._rebuild_delay, self._rebuild_fired)
            return
        self._settle_state()

    def _rebuild_fired(self) -> None:
        self._rebuild = None
        if self._trigger_build() is None:
            self._settle_state()

    async def _build_once(self, profile_name: str | None) -> BuildResult:
        session = self._session
        if session is not None:
            if profile_name and profile_name != session.profile.name:
                logger.warning("build_once_uses_active_profile", requested=profile_name, active=session.profile.name)
            return await self._build_now()

        try:
            config = self._provider.load()
            target = profile_name or config.active_profile
            profile = config.get_profile(target) if target else None
            if profile is None:
                raise ProfileNotFoundError(name=target or "")
        except ContextWatchError as e:
            self._notify("error", str(e))
            return BuildResult(None, e)

        session = self._open_session(config, profile, watching=False)
        self._session = session
        try:
            return await self._build_now()
        finally:
            if self._session is session:
                self._session = None
                if not self._building:
                    self._settle_state()

    async def _build_now(self) -> BuildResult:
        while self._building and self._build_task is not None:
            await asyncio.wait({self._build_task})
        # The build below covers any trailing rebuild the finished one queued.
        if self._rebuild is not None:
            self._rebuild.cancel()
            self._rebuild = None
        task = self._trigger_build()
        if task is None:
            return BuildResult(None, ProfileNotFoundError(name=""))
        return await task

    # --- notifications ------------------------------------------------------

    def _settle_state(self) -> None:
        if self._debounce is not None:
            self._set_state(WatcherState.DEBOUNCING)
        elif self._watches:
            self._set_state(WatcherState.WATCHING)
        else:
            self._set_state(WatcherState.IDLE)

    def _set_state(self, state: WatcherState) -> None:
        if state == self._state:
            return
        self._state = state
        profile = self.current_profile
        logger.info("state_changed", state=str(state), profile=profile.name if profile else None)
        _emit(
            self._state_listeners,
            StateChange(
                state=state,
                profile_name=profile.name if profile else None,
                file_count=self._last_stats.file_count if self._last_stats else None,
                output_format=profile.options.output_format if profile else None,
            ),
        )

    def _notify(self, level: Literal["error", "warning"], message: str) -> None:
        if level == "error":
            logger.error("notice", message=message)
        else:
            logger.warning("notice", message=message)
        _emit(self._notice_listeners, Notice(level, message))


def _subscribe[T](listeners: list[Callable[[T], None]], callback: Callable[[T], None]) -> Callable[[], None]:
    listeners.append(callback)

    def unsubscribe() -> None:
        if callback in listeners:
            listeners.remove(callback)

    return unsubscribe


def _emit[T](listeners: list[Callable[[T], None]], payload: T) -> None:
    for callback in list(listeners):
        try:
            callback(payload)
        except Exception:  # noqa: BLE001
            logger.exception("listener_failed", listener=getattr(callback, "__qualname__", repr(callback)))
