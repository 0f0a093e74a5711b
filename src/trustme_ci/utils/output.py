"""Output log shared by all invocations of one project.

Every invocation appends to the same ``<base>.log`` so a ``tail -F`` shows
the interleaved story of triggers, kills and builds. Each write reopens the
file in append mode; concurrent writers from different processes therefore
never clobber each other's lines.
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

BANNER_WIDTH = 67


def repeat_char(char: str, count: int) -> str:
    """Return ``char`` repeated ``count`` times."""
    if not char:
        raise ValueError("repeat_char: expecting a character to repeat")
    if count < 0:
        raise ValueError("repeat_char: expecting a non-negative count")
    return char * count


class OutputLog:
    """Append-only text sink handed to the session as a capability."""

    def __init__(self, path: str | Path, verbose: bool = False):
        self.path = Path(path)
        self.is_verbose = verbose
        self._said_newline = False

    def say(self, message: str = "", force: bool = False) -> None:
        """Append one line; runs of blank lines collapse to one unless forced."""
        if force or message or not self._said_newline:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(f"{message}\n")
            if message:
                logger.debug(message)
        self._said_newline = not message

    def verbose(self, message: str = "") -> None:
        if self.is_verbose:
            self.say(message)

    def announcement(self, title: str, slugline: str = "", border: str = "#") -> None:
        """Write a bordered banner."""
        rule = repeat_char(border, BANNER_WIDTH)
        self.say()
        self.say(rule)
        self.say(title)
        self.say(rule)
        if slugline:
            self.say(slugline)
        self.say()

    def verbose_announcement(self, title: str, slugline: str = "") -> None:
        if self.is_verbose:
            self.announcement(title, slugline)

    def truncate(self) -> None:
        """Empty the log; the owner does this when its pipeline starts."""
        with open(self.path, "w", encoding="utf-8"):
            pass
        self._said_newline = False
        self.say("", force=True)

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
