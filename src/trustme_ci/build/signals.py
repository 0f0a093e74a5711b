"""Cancellation channel and bounded-wait helpers.

A preempter only ever *asks* a victim to stop (SIGUSR1) and then watches the
victim's ownership record. It never removes the victim's files and never
escalates to SIGKILL.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path

from .mutex import CANCEL_SIGNAL, MutexDirectory
from .state import ContentionTimeout, CoordinatorState, Killed, SignalDeliveryError

logger = logging.getLogger(__name__)


def process_exists(pid: int) -> bool:
    """Check whether a process with this pid is alive (signal 0 probe)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to someone else.
        return True
    return True


def send_cancel(pid: int) -> bool:
    """Deliver the cancellation signal to ``pid``.

    Returns:
        True if the signal was delivered, False if the process is already gone
        (which counts as already cancelled).

    Raises:
        SignalDeliveryError: If delivery failed and the process still exists.
    """
    try:
        os.kill(pid, CANCEL_SIGNAL)
    except ProcessLookupError:
        logger.info(f"PID {pid} is already gone")
        return False
    except OSError as e:
        if not process_exists(pid):
            logger.info(f"PID {pid} vanished while being signalled")
            return False
        raise SignalDeliveryError(f"Kill failed on PID {pid}: {e}") from e
    logger.info(f"Sent {CANCEL_SIGNAL.name} to PID {pid}")
    return True


async def wait_for_removal(
    path: Path,
    *,
    grace: float,
    interval: float,
    patience: int,
    on_wait: Callable[[int], None] | None = None,
    phase: CoordinatorState | None = None,
) -> None:
    """Poll until ``path`` disappears, giving up after ``patience`` polls.

    Args:
        path: File whose absence means the peer finished tearing down
        grace: Initial pause before the first check
        interval: Pause between checks
        patience: Maximum number of checks that still find the file
        on_wait: Called with the remaining patience on each unsuccessful check

    Raises:
        ContentionTimeout: If the file is still there after the budget.
    """
    await asyncio.sleep(grace)
    remaining = patience
    while path.exists():
        if on_wait is not None:
            on_wait(remaining)
        await asyncio.sleep(interval)
        remaining -= 1
        if remaining <= 0 and path.exists():
            raise ContentionTimeout(
                f"Done waiting! {path.name} still present after {patience} checks",
                phase,
            )


async def acquire_with_patience(
    mutex: MutexDirectory,
    *,
    interval: float,
    patience: int,
    phase: CoordinatorState | None = None,
) -> None:
    """Retry ``mutex.try_acquire()`` a bounded number of times.

    Raises:
        ContentionTimeout: If every attempt found the mutex taken.
    """
    for attempt in range(patience):
        if mutex.try_acquire():
            return
        if attempt < patience - 1:
            logger.debug(
                f"{mutex.name} busy (attempt {attempt + 1}/{patience}), retrying..."
            )
            await asyncio.sleep(interval)
    raise ContentionTimeout(
        f"Someone else has the {mutex.name} after {patience} attempts", phase
    )


class CancellationToken:
    """Cooperative cancellation observed at checkpoints.

    ``cancel()`` is what the signal handler calls. The debounce sleep wakes
    immediately; everything else notices at the next ``checkpoint()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.requests = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self.requests += 1
        self._event.set()

    def checkpoint(self, phase: CoordinatorState) -> None:
        """Raise Killed if cancellation was requested."""
        if self._event.is_set():
            raise Killed(f"cancelled before {phase.value}", phase)

    async def sleep(self, seconds: float, phase: CoordinatorState) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            Killed: If cancellation arrives before or during the sleep.
        """
        self.checkpoint(phase)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise Killed(f"cancelled during {phase.value}", phase)
