"""Build session - one trigger invocation driven through the state machine.

State machine:
INIT → ACQUIRING → LOCKED → (PRE_PASS) → DEBOUNCING → REVALIDATING
     → BUILDING → LINTING → TESTING → DONE
DEBOUNCING / between steps → KILLED

The debounce window is where "newest wins" happens: both mutexes are
released, so a newer trigger acquires the Build Slot, finds our record and
signals us. Cancellation wakes the debounce sleep immediately; while a step
is running it is only noticed once that step returns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from datetime import datetime

from ..config import CoordinatorConfig
from ..utils.output import OutputLog, repeat_char
from .mutex import CANCEL_SIGNAL, CancelTrampoline
from .pipeline import Pipeline, StepAction
from .preempt import PreemptionProtocol
from .signals import CancellationToken
from .state import (
    EXIT_OK,
    CoordinatorError,
    CoordinatorState,
    InvocationResult,
    Killed,
    PipelineStepError,
)

logger = logging.getLogger(__name__)


class BuildSession:
    """Drives one invocation from trigger to teardown."""

    def __init__(
        self,
        config: CoordinatorConfig,
        pipeline: Pipeline,
        output: OutputLog | None = None,
        pid: int | None = None,
    ):
        """Initialize build session.

        Args:
            config: Coordinator configuration
            pipeline: Step callbacks
            output: Shared output log (created from config if not provided)
            pid: Identity written to the ownership record (defaults to os.getpid())
        """
        self._config = config
        self._pipeline = pipeline
        self._out = output or OutputLog(config.layout.out_file, verbose=config.verbose)
        self.pid = pid if pid is not None else os.getpid()
        self._protocol = PreemptionProtocol(config, self._out, pid=self.pid)
        self._trampoline = CancelTrampoline(config.layout.kill_bin)
        self._token = CancellationToken()
        self._state = CoordinatorState.INIT
        self._state_listeners: list[Callable[[CoordinatorState], None]] = []
        self._steps_run: list[str] = []
        self._pre_pass_done = False
        self._wrote_record = False

    @property
    def state(self) -> CoordinatorState:
        """Current state."""
        return self._state

    @property
    def protocol(self) -> PreemptionProtocol:
        return self._protocol

    @property
    def token(self) -> CancellationToken:
        return self._token

    def on_state_change(self, listener: Callable[[CoordinatorState], None]) -> None:
        """Register state change listener."""
        self._state_listeners.append(listener)

    def _set_state(self, new_state: CoordinatorState) -> None:
        """Update state and notify listeners."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"State: {old_state.value} -> {new_state.value}")
            for listener in self._state_listeners:
                try:
                    listener(new_state)
                except Exception:
                    logger.exception("State listener error")

    def request_cancel(self) -> None:
        """Cancellation handler; installed for SIGUSR1 while the session runs."""
        logger.info(f"Cancellation requested while {self._state.value}")
        self._token.cancel()

    def _install_handler(self) -> bool:
        try:
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(CANCEL_SIGNAL, self.request_cancel)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.warning(f"Cannot install {CANCEL_SIGNAL.name} handler: {e}")
            return False
        return True

    def _remove_handler(self) -> None:
        asyncio.get_running_loop().remove_signal_handler(CANCEL_SIGNAL)
        # Late cancels after teardown are ignored.
        signal.signal(CANCEL_SIGNAL, signal.SIG_IGN)

    async def run(self, install_signal_handler: bool = True) -> InvocationResult:
        """Run the whole state machine and return the outcome.

        Never raises coordinator errors: they are mapped to exit codes, logged
        with the phase they happened in, and the invocation's own state is
        torn down.
        """
        start_time = time.perf_counter()
        handler_installed = install_signal_handler and self._install_handler()
        error: CoordinatorError | None = None
        try:
            await self._drive()
            exit_code = EXIT_OK
        except Killed as e:
            error = e
            exit_code = e.exit_code
            self.teardown()
            self._out.say(f"☠☠☠ DEATH! ☠☠☠ '{self.pid}' is now dead")
            self._set_state(CoordinatorState.KILLED)
        except PipelineStepError as e:
            error = e
            exit_code = e.exit_code
            self._out.say(f"ERROR: See previous error: we sniffed a {e.exit_code}!")
            logger.error(f"Pipeline failed during {self._state.value}: {e}")
            self.teardown()
            self._set_state(CoordinatorState.FAILED)
        except CoordinatorError as e:
            error = e
            exit_code = e.exit_code
            phase = (e.phase or self._state).value
            self._out.say(f"{type(e).__name__} during {phase}: {e}")
            logger.error(f"{type(e).__name__} during {phase}: {e}")
            self.teardown()
            self._set_state(CoordinatorState.ABORTED)
        except asyncio.CancelledError:
            logger.warning(f"Invocation cancelled during {self._state.value}")
            self.teardown()
            self._set_state(CoordinatorState.ABORTED)
            raise
        except Exception:
            logger.exception(f"Unexpected error during {self._state.value}")
            self.teardown()
            self._set_state(CoordinatorState.ABORTED)
            raise
        finally:
            if handler_installed:
                self._remove_handler()

        return InvocationResult(
            pid=self.pid,
            state=self._state,
            exit_code=exit_code,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            error=error,
            steps_run=tuple(self._steps_run),
        )

    async def _drive(self) -> None:
        self._out.say()
        self._out.announcement(f"Trigger from PID {self.pid}", border="⎍")
        await self._run_step("init", self._pipeline.init)

        self._set_state(CoordinatorState.ACQUIRING)
        await self._protocol.acquire(revalidating=False)

        self._set_state(CoordinatorState.LOCKED)
        self._out.say(f"- '{self.pid}' has the lock")
        self._protocol.record.write(self.pid)
        self._wrote_record = True
        self._trampoline.write(self.pid)

        # Before the delay, so a long delay does not postpone it.
        if self._config.delay > 0 and self._pipeline.pre_pass is not None:
            self._set_state(CoordinatorState.PRE_PASS)
            await self._run_step("pre_pass", self._pipeline.pre_pass)
            self._pre_pass_done = True

        self._set_state(CoordinatorState.DEBOUNCING)
        self._out.announcement(
            "WAITING ON BUILD", f"Countdown: {self._config.delay:g} secs..."
        )
        self._protocol.drop_locks()
        await self._token.sleep(self._config.delay, CoordinatorState.DEBOUNCING)
        self._out.say("READY TO BUILD...")

        self._set_state(CoordinatorState.REVALIDATING)
        await self._protocol.acquire(revalidating=True)
        self._token.checkpoint(CoordinatorState.BUILDING)
        self._out.say("BUILDING!")

        if self._config.dry_run:
            self.teardown()
            self._out.say("DONE! (ONLY TESTING)")
            self._set_state(CoordinatorState.DONE)
            return

        self._prepare_to_build()
        await self._run_pipeline()

    def _prepare_to_build(self) -> None:
        self._protocol.kill_slot.release()
        self._out.say()
        self._out.say("See you on the other side!")
        self._out.say()
        self._out.truncate()

    async def _run_pipeline(self) -> None:
        self._set_state(CoordinatorState.BUILDING)
        time_0 = time.perf_counter()
        self._out.announcement("WARMING UP")
        self._out.say(f"Build started at {datetime.now():%Y-%m-%d_%H-%M-%S}")
        self._out.verbose()
        self._out.verbose(f"- Cwd: {self._config.project_dir}")

        await self._run_step("lang", self._pipeline.lang)
        if not self._pre_pass_done:
            await self._run_step("pre_pass", self._pipeline.pre_pass)
        await self._run_step("build", self._pipeline.build)
        self._out.say(repeat_char(">", 67))
        self._out.say(f"{repeat_char('|', 67)} BUILT!")
        self._out.say(repeat_char("<", 67))

        self._set_state(CoordinatorState.LINTING)
        await self._run_step("lint", self._pipeline.lint)

        self._set_state(CoordinatorState.TESTING)
        await self._run_step("test", self._pipeline.test)

        elapsed = time.perf_counter() - time_0
        self._out.announcement("DONE!")
        self._out.say(
            f"Build finished at {datetime.now():%H:%M:%S} on {datetime.now():%Y-%m-%d} "
            f"in {elapsed:.2f} secs."
        )
        self.teardown()
        self._set_state(CoordinatorState.DONE)

    async def _run_step(self, name: str, action: StepAction | None) -> None:
        """Await one step, bracketed by cancellation checkpoints."""
        if action is None:
            return
        if name != "init":
            self._token.checkpoint(self._state)
        self._out.announcement(f"{name.upper().replace('_', ' ')} IT")
        exit_code = await action()
        self._steps_run.append(name)
        if exit_code:
            raise PipelineStepError(name, exit_code, self._state)
        if name != "init":
            self._token.checkpoint(self._state)

    def teardown(self) -> None:
        """Release what this invocation holds and remove its own files.

        The Build Slot goes first, so whoever is waiting for the record to
        vanish can take the slot as soon as it does. Files are only removed
        when this invocation wrote them. Safe to call repeatedly.
        """
        self._protocol.drop_locks()
        if not self._wrote_record:
            return
        self._trampoline.remove()
        if self._protocol.record.names(self.pid):
            self._protocol.record.remove()
