"""Per-project pipeline plugin.

The plugin is ``<base>.toml`` next to the state files:

    [steps]
    pre_pass = "ctags -R ."
    build = ["make", "make docs"]
    lint = "flake8 src"
    test = "pytest -q"

Each step is one command line or a list of them. Command lines are split with
shlex and executed without a shell.
"""

from __future__ import annotations

import shlex
import tomllib
from pathlib import Path
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Order in which the session invokes the steps.
STEP_NAMES: Final[tuple[str, ...]] = ("init", "pre_pass", "lang", "build", "lint", "test")


class PluginError(Exception):
    """Plugin file is missing or malformed."""


def split_command(command: str) -> list[str]:
    """Split a command line into argv.

    Raises:
        ValueError: If the line is empty or has unbalanced quoting.
    """
    argv = shlex.split(command)
    if not argv:
        raise ValueError("empty command")
    return argv


class StepCommands(BaseModel):
    """Commands for every pipeline step; a missing step is a no-op."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    init: list[str] = Field(default_factory=list)
    pre_pass: list[str] = Field(default_factory=list)
    lang: list[str] = Field(default_factory=list)
    build: list[str] = Field(default_factory=list)
    lint: list[str] = Field(default_factory=list)
    test: list[str] = Field(default_factory=list)

    @field_validator(*STEP_NAMES, mode="before")
    @classmethod
    def _one_or_many(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator(*STEP_NAMES)
    @classmethod
    def _splittable(cls, commands: list[str]) -> list[str]:
        for command in commands:
            split_command(command)
        return commands

    def argv_for(self, step: str) -> list[list[str]]:
        if step not in STEP_NAMES:
            raise KeyError(step)
        return [split_command(command) for command in getattr(self, step)]


class PluginConfig(BaseModel):
    """Validated contents of the plugin file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    steps: StepCommands = Field(default_factory=StepCommands)


def load_plugin(path: str | Path) -> PluginConfig:
    """Read and validate a plugin file.

    Raises:
        PluginError: If the file is missing, not TOML, or fails validation.
    """
    plugin_path = Path(path)
    try:
        with open(plugin_path, "rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as e:
        raise PluginError(
            f"No project plugin! Nothing to do. Hint: Create and edit: {plugin_path}"
        ) from e
    except tomllib.TOMLDecodeError as e:
        raise PluginError(f"Plugin {plugin_path} is not valid TOML: {e}") from e

    try:
        return PluginConfig.model_validate(data)
    except ValidationError as e:
        raise PluginError(f"Plugin {plugin_path} is invalid: {e}") from e
