"""Coordinator state machine, error taxonomy and invocation result.

State machine for one invocation:
INIT → ACQUIRING → LOCKED → (PRE_PASS) → DEBOUNCING → REVALIDATING
     → BUILDING → LINTING → TESTING → DONE
DEBOUNCING | BUILDING | LINTING | TESTING → KILLED
any → ABORTED | FAILED
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

EXIT_OK = 0
EXIT_SUPPRESSED = 1
EXIT_KILLED = 1


class CoordinatorState(str, Enum):
    """Invocation state machine states."""

    INIT = "init"
    ACQUIRING = "acquiring"
    LOCKED = "locked"
    PRE_PASS = "pre_pass"
    DEBOUNCING = "debouncing"
    REVALIDATING = "revalidating"
    BUILDING = "building"
    LINTING = "linting"
    TESTING = "testing"
    DONE = "done"
    KILLED = "killed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    CoordinatorState.DONE,
    CoordinatorState.KILLED,
    CoordinatorState.ABORTED,
    CoordinatorState.FAILED,
})


class CoordinatorError(Exception):
    """Base error for anything that ends an invocation early."""

    exit_code: int = EXIT_SUPPRESSED

    def __init__(self, message: str, phase: CoordinatorState | None = None):
        super().__init__(message)
        self.phase = phase

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "error": str(self),
            "kind": type(self).__name__,
            "exitCode": self.exit_code,
        }
        if self.phase is not None:
            result["phase"] = self.phase.value
        return result


class ProtocolViolation(CoordinatorError):
    """Lock state was mutated outside the protocol."""


class ContentionTimeout(CoordinatorError):
    """A bounded wait on a peer ran out of patience."""


class SignalDeliveryError(CoordinatorError):
    """Cancellation could not be delivered to a live process."""


class Superseded(CoordinatorError):
    """A newer trigger took the build slot while this one was debouncing."""


class Killed(CoordinatorError):
    """Cancellation was observed at a checkpoint."""

    exit_code = EXIT_KILLED


class PipelineStepError(CoordinatorError):
    """A pipeline step exited non-zero."""

    def __init__(self, step: str, exit_code: int, phase: CoordinatorState | None = None):
        super().__init__(f"step '{step}' exited with status {exit_code}", phase)
        self.step = step
        self.exit_code = exit_code


@dataclass
class InvocationResult:
    """Outcome of one trigger invocation."""

    pid: int
    state: CoordinatorState
    exit_code: int
    duration_ms: float = 0.0
    error: CoordinatorError | None = None
    steps_run: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_OK

    @property
    def killed(self) -> bool:
        return self.state == CoordinatorState.KILLED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "pid": self.pid,
            "success": self.success,
            "state": self.state.value,
            "exitCode": self.exit_code,
            "durationMs": round(self.duration_ms, 2),
            "steps": list(self.steps_run),
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        if self.state == CoordinatorState.DONE and self.success:
            status = "[OK] Build finished"
        elif self.killed:
            status = "[KILLED] Preempted by a newer trigger"
        elif self.state == CoordinatorState.FAILED:
            status = "[FAILED] Pipeline failed"
        else:
            status = "[ABORTED] Build suppressed"

        parts = [
            status,
            f"  PID: {self.pid}",
            f"  Duration: {self.duration_ms:.0f}ms",
        ]
        if self.steps_run:
            parts.append(f"  Steps: {', '.join(self.steps_run)}")
        if self.error is not None:
            phase = f" during {self.error.phase.value}" if self.error.phase else ""
            parts.append(f"  Reason{phase}: {self.error}")
        return "\n".join(parts)
