"""Filesystem primitives shared between invocations.

- MutexDirectory: ``mkdir`` is atomic, so at most one racing caller wins.
- OwnershipRecord: decimal pid of the Build Slot holder.
- CancelTrampoline: executable that signals the recorded holder.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

CANCEL_SIGNAL = signal.SIGUSR1


class MutexDirectory:
    """Binary lock backed by an atomically created directory."""

    def __init__(self, path: str | Path, name: str = "mutex"):
        self.path = Path(path)
        self.name = name
        self._held = False

    @property
    def held(self) -> bool:
        """Whether this instance created the directory and has not released it."""
        return self._held

    def try_acquire(self) -> bool:
        """Attempt the atomic create. Returns True if this caller now holds it."""
        try:
            os.mkdir(self.path)
        except FileExistsError:
            return False
        self._held = True
        logger.debug(f"Acquired {self.name}: {self.path}")
        return True

    def release(self) -> None:
        """Remove the directory. Only the holder calls this; absence is tolerated."""
        try:
            os.rmdir(self.path)
        except FileNotFoundError:
            logger.debug(f"Release of {self.name} found it already gone")
        self._held = False

    def exists(self) -> bool:
        """Non-atomic probe, for diagnostics only."""
        return self.path.is_dir()

    def __repr__(self) -> str:
        return f"MutexDirectory({self.name}={str(self.path)!r}, held={self._held})"


class OwnershipRecord:
    """File naming the current Build Slot owner by pid."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> int | None:
        """Return the recorded pid, or None when the record is absent or empty.

        Raises:
            ValueError: If the record holds something other than a pid.
        """
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        return int(text)

    def write(self, pid: int) -> None:
        self.path.write_text(f"{pid}\n", encoding="utf-8")

    def names(self, pid: int) -> bool:
        try:
            return self.read() == pid
        except ValueError:
            return False

    def remove(self) -> None:
        """Delete the record. Absence is tolerated so teardown is idempotent."""
        self.path.unlink(missing_ok=True)


class CancelTrampoline:
    """Executable shell snippet that cancels the recorded owner."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @staticmethod
    def render(pid: int) -> str:
        return f"#!/bin/sh\nexec kill -s {CANCEL_SIGNAL.name[3:]} {pid}\n"

    def write(self, pid: int) -> None:
        self.path.write_text(self.render(pid), encoding="utf-8")
        self.path.chmod(0o755)

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)
