"""Coordinator configuration and persisted state layout.

All knobs live on one frozen ``CoordinatorConfig`` value that is built once
by the CLI (environment first, explicit flags on top) and handed to the
session. Nothing below reads the environment on its own.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_BASENAME = ".trustme"

ENV_DELAY = "TRUSTME_DELAYSECS"
ENV_VERBOSE = "TRUSTME_VERBOSE"
ENV_BASENAME = "TRUSTME_BASENAME"
ENV_DRY_RUN = "TRUSTME_DRY_RUN"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class StateLayout:
    """Paths of the shared state, all derived from one project-scoped base."""

    lock_dir: Path
    kill_dir: Path
    pid_file: Path
    kill_bin: Path
    out_file: Path
    plugin_file: Path

    @classmethod
    def for_base(cls, project_dir: Path, basename: str) -> StateLayout:
        return cls(
            lock_dir=project_dir / f"{basename}.lock",
            kill_dir=project_dir / f"{basename}.kill",
            pid_file=project_dir / f"{basename}.pid",
            kill_bin=project_dir / f"{basename}.kill!",
            out_file=project_dir / f"{basename}.log",
            plugin_file=project_dir / f"{basename}.toml",
        )


class CoordinatorConfig(BaseModel):
    """Explicit configuration for one trigger invocation."""

    model_config = ConfigDict(frozen=True)

    project_dir: Path
    basename: str = DEFAULT_BASENAME
    delay: float = Field(default=0.0, ge=0)
    verbose: bool = False
    dry_run: bool = False

    # Preempter waiting for a victim's teardown.
    kill_grace: float = Field(default=0.1, ge=0)
    kill_poll_interval: float = Field(default=0.5, gt=0)
    kill_patience: int = Field(default=10, ge=1)

    # Contention on the kill slot itself.
    kill_slot_interval: float = Field(default=0.2, gt=0)
    kill_slot_patience: int = Field(default=10, ge=1)

    # Loop-backs to acquisition after a successful preemption.
    preempt_rounds: int = Field(default=3, ge=1)

    @field_validator("project_dir")
    @classmethod
    def _absolute_project_dir(cls, value: Path) -> Path:
        return Path(os.path.abspath(value))

    @field_validator("basename")
    @classmethod
    def _plain_basename(cls, value: str) -> str:
        if not value or value in (".", ".."):
            raise ValueError("basename must not be empty")
        if os.sep in value or (os.altsep and os.altsep in value):
            raise ValueError(f"basename must not contain path separators: {value!r}")
        return value

    @property
    def layout(self) -> StateLayout:
        return StateLayout.for_base(self.project_dir, self.basename)

    @classmethod
    def from_env(
        cls,
        project_dir: str | Path,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> CoordinatorConfig:
        """Build config from TRUSTME_* variables, then apply explicit overrides.

        Overrides whose value is None are ignored so argparse defaults do not
        mask the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {"project_dir": project_dir}

        if env.get(ENV_DELAY):
            values["delay"] = env[ENV_DELAY]
        if env.get(ENV_VERBOSE):
            values["verbose"] = env[ENV_VERBOSE].strip().lower() in _TRUTHY
        if env.get(ENV_BASENAME):
            values["basename"] = env[ENV_BASENAME]
        if env.get(ENV_DRY_RUN):
            values["dry_run"] = env[ENV_DRY_RUN].strip().lower() in _TRUTHY

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
