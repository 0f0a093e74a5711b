"""Pipeline steps as zero-argument async actions.

The session only knows the callback surface: each step is awaited and
returns an exit status. ``Pipeline.from_plugin`` wires those callbacks to
subprocess commands whose output goes to the shared log.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from pathlib import Path

from .plugin import PluginConfig

logger = logging.getLogger(__name__)

StepAction = Callable[[], Awaitable[int]]

EXIT_COMMAND_NOT_FOUND = 127


async def run_command(argv: list[str], cwd: str | Path, log_path: str | Path) -> int:
    """Run one command to completion, appending stdout and stderr to the log.

    Never uses a shell. SIGUSR1 cancellation never interrupts the wait: a
    running step always finishes. Cancelling the asyncio task kills the child.

    Returns:
        Exit status; 127 when the executable cannot be found.
    """
    logger.info(f"Running: {' '.join(argv)}")
    with open(log_path, "ab") as log_fh:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_fh,
                stderr=asyncio.subprocess.STDOUT,
                cwd=os.fspath(cwd),
            )
        except FileNotFoundError:
            log_fh.write(f"command not found: {argv[0]}\n".encode())
            logger.warning(f"Command not found: {argv[0]}")
            return EXIT_COMMAND_NOT_FOUND
        try:
            exit_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                logger.warning(f"Killing {argv[0]} (pid {process.pid}) on cancellation")
                process.kill()
                await process.wait()
            raise
    if exit_code < 0:
        # Terminated by a signal; report it the way a shell would.
        return 128 - exit_code
    return exit_code


def command_step(commands: list[list[str]], cwd: str | Path, log_path: str | Path) -> StepAction:
    """Build a step that runs ``commands`` in order, stopping at the first failure."""

    async def action() -> int:
        for argv in commands:
            exit_code = await run_command(argv, cwd, log_path)
            if exit_code != 0:
                return exit_code
        return 0

    return action


@dataclass
class Pipeline:
    """Callback surface exposed to the build tooling.

    ``build``, ``lint`` and ``test`` run in that order after revalidation.
    ``pre_pass`` runs before the debounce delay when there is one, otherwise
    at the head of the pipeline. ``init`` runs before acquisition and
    ``lang`` right before ``build``.
    """

    build: StepAction | None = None
    lint: StepAction | None = None
    test: StepAction | None = None
    pre_pass: StepAction | None = None
    init: StepAction | None = None
    lang: StepAction | None = None

    @classmethod
    def from_plugin(
        cls,
        plugin: PluginConfig,
        cwd: str | Path,
        log_path: str | Path,
    ) -> Pipeline:
        actions: dict[str, StepAction | None] = {}
        for f in fields(cls):
            commands = plugin.steps.argv_for(f.name)
            actions[f.name] = command_step(commands, cwd, log_path) if commands else None
        return cls(**actions)
