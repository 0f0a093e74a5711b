"""Preemption protocol - become sole owner of the Build Slot or give up.

A fresh invocation that finds the slot free still reconciles with whatever
ownership record is lying around. One that finds the slot taken becomes a
preempter: it takes the Kill Slot, signals the recorded owner, waits for that
owner to remove its own record, and then loops back to acquisition.
"""

from __future__ import annotations

import asyncio
import logging
import os

from ..config import CoordinatorConfig
from ..utils.output import OutputLog
from .mutex import MutexDirectory, OwnershipRecord
from .signals import (
    acquire_with_patience,
    process_exists,
    send_cancel,
    wait_for_removal,
)
from .state import ContentionTimeout, CoordinatorState, ProtocolViolation, Superseded

logger = logging.getLogger(__name__)


class PreemptionProtocol:
    """Acquire the Build Slot for one invocation, preempting if needed."""

    def __init__(
        self,
        config: CoordinatorConfig,
        output: OutputLog,
        pid: int | None = None,
    ):
        layout = config.layout
        self._config = config
        self._out = output
        self.pid = pid if pid is not None else os.getpid()
        self.build_slot = MutexDirectory(layout.lock_dir, "build lock")
        self.kill_slot = MutexDirectory(layout.kill_dir, "kill lock")
        self.record = OwnershipRecord(layout.pid_file)

    async def acquire(self, revalidating: bool = False) -> None:
        """Produce sole ownership of the Build Slot.

        On return both the Build Slot and the Kill Slot are held by this
        invocation.

        Raises:
            ProtocolViolation: Lock state was touched outside the protocol.
            ContentionTimeout: A bounded wait ran out.
            SignalDeliveryError: The recorded owner could not be signalled.
            Superseded: Revalidation found a newer owner.
        """
        phase = CoordinatorState.REVALIDATING if revalidating else CoordinatorState.ACQUIRING
        self._out.say(f"Desperately Seeking Lock (pid {self.pid})...")

        rounds = self._config.preempt_rounds
        # One acquisition attempt per round plus a final one after the last preemption.
        for round_no in range(1, rounds + 2):
            if self.build_slot.try_acquire():
                self._out.say("- Scored the lock!")
                try:
                    await self._reconcile(revalidating, phase)
                except BaseException:
                    self.drop_locks()
                    raise
                return

            if revalidating:
                raise Superseded("i waited for you but you locked me out", phase)
            if round_no > rounds:
                break

            self._out.say("Could not lock, but can still kill!")
            try:
                await self._preempt_holder(phase)
            finally:
                if self.kill_slot.held:
                    self.kill_slot.release()
            logger.info(f"Preemption round {round_no}/{rounds} done, retrying lock")

        raise ContentionTimeout(
            f"build lock still taken after {rounds} preemption rounds", phase
        )

    async def _reconcile(self, revalidating: bool, phase: CoordinatorState) -> None:
        """Holding the Build Slot, settle any ownership record already present."""
        await acquire_with_patience(
            self.kill_slot,
            interval=self._config.kill_slot_interval,
            patience=self._config.kill_slot_patience,
            phase=phase,
        )

        try:
            owner = self.record.read()
        except ValueError as e:
            raise ProtocolViolation(f"Unreadable PID file {self.record.path}: {e}", phase) from e

        if revalidating:
            if owner != self.pid:
                raise ProtocolViolation(
                    f"Panic, jerks! The build_pid is not our PID! {owner} != {self.pid}",
                    phase,
                )
            return

        if owner is None:
            if self.record.exists():
                self._out.say("WARNING: Empty PID file? Whatever, we'll take it!")
            else:
                self._out.say("Got the build lock and kill lock, and there's no PID. Fresh powder!")
            return

        if owner == self.pid:
            raise ProtocolViolation(f"PID file already names this fresh invocation ({owner})", phase)

        if not process_exists(owner):
            self._out.say(f"PID {owner} is a ghost; its record will be overwritten")
            return

        # Orphan from an invocation that has not finished tearing down.
        await self._cancel_and_wait(owner, phase)

    async def _preempt_holder(self, phase: CoordinatorState) -> None:
        """Without the Build Slot: cancel whoever holds it and wait them out."""
        await acquire_with_patience(
            self.kill_slot,
            interval=self._config.kill_slot_interval,
            patience=self._config.kill_slot_patience,
            phase=phase,
        )

        try:
            victim = self.record.read()
        except ValueError as e:
            raise ProtocolViolation(f"Unreadable PID file {self.record.path}: {e}", phase) from e

        if victim is None:
            if await self._holder_settles():
                self._out.say("Build lock holder moved on while we looked, retrying")
                return
            raise ProtocolViolation(
                "Kill okay without build lock, but no PID file. Is someone tinkering?",
                phase,
            )
        if victim == self.pid:
            raise ProtocolViolation(f"PID file names the preempter itself ({victim})", phase)

        if not process_exists(victim):
            raise ProtocolViolation(
                f"build lock is held by dead PID {victim}; run 'trustme reset'",
                phase,
            )

        await self._cancel_and_wait(victim, phase)

    async def _holder_settles(self) -> bool:
        """Wait briefly for a recordless slot holder to write its record or leave.

        A peer that just won the Build Slot cannot write its record until it
        gets the Kill Slot, so ours is released first.
        """
        self.kill_slot.release()
        for _ in range(self._config.kill_slot_patience):
            if not self.build_slot.exists() or self.record.exists():
                return True
            await asyncio.sleep(self._config.kill_slot_interval)
        return not self.build_slot.exists() or self.record.exists()

    async def _cancel_and_wait(self, victim: int, phase: CoordinatorState) -> None:
        """Signal ``victim`` and watch for it to remove its own record."""
        self._out.say(f"Killing '{victim}'")
        if not send_cancel(victim):
            # Gone between the liveness probe and the signal.
            self._out.say(f"Kill failed on PID '{victim}', but it no longer exists")
            return

        await wait_for_removal(
            self.record.path,
            grace=self._config.kill_grace,
            interval=self._config.kill_poll_interval,
            patience=self._config.kill_patience,
            on_wait=lambda remaining: self._out.say(
                f"Waiting on PID {victim} to cleanup... ({remaining})"
            ),
            phase=phase,
        )
        self._out.say(f"PID {victim} cleaned up after itself")

    def drop_locks(self) -> None:
        """Release whichever of the two mutexes this invocation holds."""
        if self.build_slot.held:
            self.build_slot.release()
        if self.kill_slot.held:
            self.kill_slot.release()
