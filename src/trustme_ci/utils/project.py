"""Project root detection."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

from ..config import DEFAULT_BASENAME

logger = logging.getLogger(__name__)


def find_project_root(
    basename: str = DEFAULT_BASENAME,
    root: str | Path | None = None,
    start: str | Path | None = None,
) -> str:
    """Find the project root by walking up from ``start`` (default: CWD).

    Searches for project markers in this order:
    1. ``<basename>.toml`` (the pipeline plugin)
    2. .git (git root as fallback)

    Falls back to the start directory if no marker is found.

    Args:
        basename: State base name; selects which plugin file counts as a marker
        root: If provided, constrains search to this directory and below.
        start: Directory to start from.

    Returns:
        Absolute path to project root
    """
    current = Path(start).resolve() if start is not None else Path.cwd().resolve()
    boundary = Path(root).resolve() if root is not None else None

    def ancestors() -> Iterator[Path]:
        """Yield current directory and ancestors up to boundary."""
        yield current
        if boundary is not None and current == boundary:
            return
        for parent in current.parents:
            yield parent
            if boundary is not None and parent == boundary:
                return

    for directory in ancestors():
        if (directory / f"{basename}.toml").is_file():
            return str(directory)

    for directory in ancestors():
        if (directory / ".git").exists():  # .git can be file (worktree) or dir
            return str(directory)

    logger.debug(f"No project marker above {current}, using it as root")
    return str(current)
