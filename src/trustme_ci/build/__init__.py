"""Build coordination for save-triggered pipelines.

Provides a newest-trigger-wins build coordinator with:
- Cross-process Build Slot and Kill Slot mutexes (atomic mkdir)
- Ownership record and cancel trampoline naming the current holder
- SIGUSR1 cooperative cancellation observed at checkpoints
- Preemption protocol with bounded waits, never force-breaking a peer
- Debounce-then-build state machine driving pluggable pipeline steps
"""

from .mutex import CancelTrampoline, MutexDirectory, OwnershipRecord
from .pipeline import Pipeline, run_command
from .plugin import PluginConfig, PluginError, load_plugin
from .preempt import PreemptionProtocol
from .session import BuildSession
from .signals import CancellationToken, process_exists, send_cancel
from .state import (
    ContentionTimeout,
    CoordinatorError,
    CoordinatorState,
    InvocationResult,
    Killed,
    PipelineStepError,
    ProtocolViolation,
    SignalDeliveryError,
    Superseded,
)

__all__ = [
    "BuildSession",
    "PreemptionProtocol",
    "Pipeline",
    "PluginConfig",
    "PluginError",
    "load_plugin",
    "run_command",
    "MutexDirectory",
    "OwnershipRecord",
    "CancelTrampoline",
    "CancellationToken",
    "process_exists",
    "send_cancel",
    "CoordinatorState",
    "InvocationResult",
    "CoordinatorError",
    "ProtocolViolation",
    "ContentionTimeout",
    "SignalDeliveryError",
    "Superseded",
    "Killed",
    "PipelineStepError",
]
