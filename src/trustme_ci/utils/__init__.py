"""Utility modules for trustme-ci."""

from .output import OutputLog, repeat_char
from .project import find_project_root

__all__ = [
    "OutputLog",
    "repeat_char",
    "find_project_root",
]
