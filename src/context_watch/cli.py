"""
context-watch: keep an LLM context document in sync with a project tree.

Usage
-----
Run `context-watch --help` for full options. Common examples:
    - Write the starter configuration (.context/config.json):
        context-watch init

    - List the configured profiles, the active one marked with `*`:
        context-watch profiles

    - Build the active profile once:
        context-watch build

    - Watch a profile and rebuild on every change until interrupted:
        context-watch watch --profile backend

    - Log to a file:
        context-watch --log-file context-watch.log watch
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from context_watch import __version__
from context_watch.change_source import WatchdogChangeSource, join_watches
from context_watch.config_provider import ConfigProvider
from context_watch.exceptions import ContextWatchError, ProfileNotFoundError
from context_watch.file_manipulation import human_size
from context_watch.logging import logger, setup_logging
from context_watch.settings import Settings
from context_watch.watcher import BuildScheduler, ConfigReloaded

if TYPE_CHECKING:
    from collections.abc import Sequence

    from context_watch.change_source import ChangeSource
    from context_watch.config import BuildStats
    from context_watch.watcher import Notice, StateChange


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    p = argparse.ArgumentParser(
        prog="context-watch",
        description="Build and watch LLM context documents for a project.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--root", type=str, default=None, help="Monitored root (default: cwd).")
    p.add_argument("--config", type=str, default=None, help="Configuration file, relative to the root.")
    p.add_argument("--log-file", type=str, default=None, help="Log file path.")

    sub = p.add_subparsers(dest="command", required=True)
    init = sub.add_parser("init", help="Write the starter configuration.")
    init.add_argument("--overwrite", action="store_true", help="Replace an existing configuration.")
    sub.add_parser("profiles", help="List the configured profiles.")
    for name, text in (("build", "Build a profile once."), ("watch", "Watch a profile until interrupted.")):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("--profile", type=str, default=None, help="Profile name (default: the active one).")

    args = p.parse_args(argv)
    return Settings(**{k: v for k, v in vars(args).items() if v is not None})


def format_stats(stats: BuildStats, output: Path) -> str:
    return (
        f"Wrote {output} files={stats.file_count} "
        f"size={human_size(stats.total_size_bytes)} tokens={stats.token_count}"
    )


def print_state(change: StateChange) -> None:
    print(f"[{change.state}] {change.profile_name or '-'}")


def print_build(scheduler: BuildScheduler, stats: BuildStats) -> None:
    profile = scheduler.current_profile
    output = scheduler.root / profile.output_file if profile else scheduler.root
    print(format_stats(stats, output))


def print_notice(notice: Notice) -> None:
    print(f"{notice.level}: {notice.message}", file=sys.stderr)


def cmd_init(settings: Settings, provider: ConfigProvider) -> int:
    path = provider.create_default(overwrite=settings.overwrite)
    print(f"Wrote {path}")
    return 0


def cmd_profiles(_settings: Settings, provider: ConfigProvider) -> int:
    config = provider.load()
    if not config.profiles:
        print("No profiles configured.")
        return 0
    for profile in config.profiles:
        mark = "*" if profile.name == config.active_profile else " "
        line = f"{mark} {profile.name}  ->  {profile.output_file}"
        if profile.description:
            line += f"  ({profile.description})"
        print(line)
    return 0


def cmd_build(settings: Settings, provider: ConfigProvider) -> int:
    scheduler = BuildScheduler(settings.root, provider, WatchdogChangeSource())
    scheduler.on_build_finished(lambda stats: print_build(scheduler, stats))

    async def run() -> None:
        try:
            await scheduler.build_once(settings.profile or None)
        finally:
            scheduler.close()

    asyncio.run(run())
    return 0


async def run_watch(
    scheduler: BuildScheduler,
    provider: ConfigProvider,
    source: ChangeSource,
    profile_name: str,
    stop: asyncio.Event | None = None,
) -> None:
    """Watch `profile_name` and follow configuration reloads until `stop` is set.

    Args:
        scheduler (BuildScheduler): the scheduler driving builds
        provider (ConfigProvider): provider whose file is watched for reloads
        source (ChangeSource): change source used for the configuration file
        profile_name (str): profile to watch
        stop (asyncio.Event | None): ends the watch when set, runs until
            cancelled when omitted
    """
    stop = stop or asyncio.Event()
    config_watch = provider.watch(source, lambda config, error: scheduler.post(ConfigReloaded(config, error)))
    try:
        scheduler.start(profile_name)
        await stop.wait()
    finally:
        config_watch.close()
        scheduler.close()
        await asyncio.to_thread(join_watches, [config_watch])


def cmd_watch(settings: Settings, provider: ConfigProvider) -> int:
    config = provider.load()
    name = settings.profile or config.active_profile
    if not name or config.get_profile(name) is None:
        raise ProfileNotFoundError(name=name)

    source = WatchdogChangeSource()
    scheduler = BuildScheduler(settings.root, provider, source)
    scheduler.on_state_change(print_state)
    scheduler.on_notice(print_notice)
    scheduler.on_build_finished(lambda stats: print_build(scheduler, stats))
    print(f"Watching profile {name!r} under {scheduler.root} (Ctrl+C to stop)")
    try:
        asyncio.run(run_watch(scheduler, provider, source, name))
    except KeyboardInterrupt:
        print("Stopped.")
    return 0


HANDLERS = {
    "init": cmd_init,
    "profiles": cmd_profiles,
    "build": cmd_build,
    "watch": cmd_watch,
}


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    if settings.log_file:
        setup_logging(settings.log_file)

    settings = settings.model_copy(update={"root": Path(settings.root).resolve()})
    provider = ConfigProvider(settings.root, settings.config_path)
    logger.info("command_started", command=settings.command, root=str(settings.root))

    try:
        return HANDLERS[settings.command](settings, provider)
    except ContextWatchError as e:
        logger.error("command_failed", command=settings.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
