"""Entry point for the trustme build coordinator."""

import argparse
import asyncio
import json
import logging
import os
import sys

from pydantic import ValidationError

from .build import (
    BuildSession,
    MutexDirectory,
    OwnershipRecord,
    Pipeline,
    PluginError,
    SignalDeliveryError,
    load_plugin,
    process_exists,
    send_cancel,
)
from .build.mutex import CancelTrampoline
from .config import ENV_BASENAME, CoordinatorConfig
from .utils import OutputLog, find_project_root

logger = logging.getLogger(__name__)

ENV_ON_SAVE = "DUBS_TRUST_ME_ON_SAVE"
ENV_ON_FILE = "DUBS_TRUST_ME_ON_FILE"


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project",
        type=str,
        default=None,
        help="Project directory holding the state files and plugin. "
        "Defaults to the nearest ancestor with a plugin file or .git.",
    )
    common.add_argument(
        "--basename",
        type=str,
        default=None,
        help="Base name of the state files (default: .trustme). "
        "Use different names to isolate several pipelines in one directory.",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=None,
        help="Write extra detail to the output log.",
    )

    parser = argparse.ArgumentParser(
        prog="trustme",
        description="Save-triggered build coordinator - the newest trigger always wins",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    trigger = subparsers.add_parser(
        "trigger", parents=[common], help="Run one invocation for a trigger."
    )
    trigger.add_argument(
        "--on-save",
        action="store_true",
        default=False,
        help=f"The trigger is a save and should build (also: {ENV_ON_SAVE}=1).",
    )
    trigger.add_argument(
        "--file",
        type=str,
        default=None,
        help=f"File that caused the trigger, for the log (also: {ENV_ON_FILE}).",
    )
    trigger.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Debounce delay in seconds before building (default: 0).",
    )
    trigger.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Run the coordination protocol but skip the pipeline steps.",
    )

    subparsers.add_parser(
        "cancel", parents=[common], help="Ask the current owner to stop."
    )
    subparsers.add_parser(
        "status", parents=[common], help="Show lock and owner state as JSON."
    )
    subparsers.add_parser(
        "reset", parents=[common], help="Remove state left behind by a dead owner."
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CoordinatorConfig:
    """Resolve the project directory and merge environment with flags."""
    basename = args.basename or os.environ.get(ENV_BASENAME) or ".trustme"
    project_dir = args.project or find_project_root(basename)
    return CoordinatorConfig.from_env(
        project_dir,
        basename=args.basename,
        verbose=args.verbose,
        delay=getattr(args, "delay", None),
        dry_run=getattr(args, "dry_run", None),
    )


async def run_trigger(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    layout = config.layout
    out = OutputLog(layout.out_file, verbose=config.verbose)
    on_save = args.on_save or os.environ.get(ENV_ON_SAVE) == "1"
    saved_file = args.file or os.environ.get(ENV_ON_FILE)

    # Editors also fire on plain buffer enter; only saves build.
    if not on_save:
        out.verbose_announcement(f"{ENV_ON_FILE}: {saved_file}")
        out.verbose("Nothing to do on open")
        return 0

    try:
        plugin = load_plugin(layout.plugin_file)
    except PluginError as e:
        out.say(str(e))
        logger.error(str(e))
        return 1

    if saved_file:
        out.verbose(f"- Saved: {saved_file}")

    pipeline = Pipeline.from_plugin(plugin, config.project_dir, layout.out_file)
    session = BuildSession(config, pipeline, out)
    result = await session.run()
    logger.info(result.to_summary())
    return result.exit_code


def run_cancel(config: CoordinatorConfig) -> int:
    record = OwnershipRecord(config.layout.pid_file)
    try:
        owner = record.read()
    except ValueError as e:
        logger.error(f"Unreadable PID file {record.path}: {e}")
        return 1
    if owner is None:
        print("No build owner to cancel")
        return 1
    try:
        delivered = send_cancel(owner)
    except SignalDeliveryError as e:
        logger.error(str(e))
        return 1
    print(f"Cancelled {owner}" if delivered else f"{owner} was already gone")
    return 0 if delivered else 1


def collect_status(config: CoordinatorConfig) -> dict:
    layout = config.layout
    record = OwnershipRecord(layout.pid_file)
    try:
        owner = record.read()
    except ValueError:
        owner = None
    return {
        "project": str(config.project_dir),
        "basename": config.basename,
        "buildLock": MutexDirectory(layout.lock_dir, "build lock").exists(),
        "killLock": MutexDirectory(layout.kill_dir, "kill lock").exists(),
        "owner": owner,
        "ownerAlive": process_exists(owner) if owner is not None else False,
        "trampoline": layout.kill_bin.exists(),
        "log": str(layout.out_file),
    }


def run_reset(config: CoordinatorConfig) -> int:
    layout = config.layout
    record = OwnershipRecord(layout.pid_file)
    try:
        owner = record.read()
    except ValueError:
        owner = None
    if owner is not None and process_exists(owner):
        logger.error(f"PID {owner} is alive and owns the build; use 'trustme cancel'")
        return 1

    for mutex in (
        MutexDirectory(layout.lock_dir, "build lock"),
        MutexDirectory(layout.kill_dir, "kill lock"),
    ):
        if mutex.exists():
            mutex.release()
            print(f"Removed {mutex.path}")
    CancelTrampoline(layout.kill_bin).remove()
    record.remove()
    return 0


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    configure_logging()
    args = parse_args(argv)

    try:
        config = build_config(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.command == "trigger":
        return await run_trigger(args, config)
    if args.command == "cancel":
        return run_cancel(config)
    if args.command == "status":
        print(json.dumps(collect_status(config), indent=2))
        return 0
    return run_reset(config)


def run() -> None:
    """Run the coordinator CLI."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
