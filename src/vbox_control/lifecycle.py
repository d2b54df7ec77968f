"""Machine lifecycle controller: start or stop a machine from any state.

State diagram reference:
https://www.virtualbox.org/sdkref/_virtual_box_8idl.html (MachineState)

Start:
    transient  -> poll until stable
    Running    -> done (no session, no remote call)
    Paused     -> resume (no snapshot requested)
    Stuck      -> power down
    Paused     -> power down (snapshot requested)
    any halted -> restore snapshot when requested (fresh Write session)
    then       -> launchVMProcess from PoweredOff / Aborted / Saved

Stop:
    transient                -> poll until stable
    PoweredOff/Saved/Aborted -> done (no session, no remote call)
    Stuck or POWER_DOWN mode -> power down, then restore snapshot when requested
    otherwise                -> save state

Every remote action is awaited with the completion timeout, and the whole
operation runs under the operation deadline. Sessions are always held
through SessionCoordinator.hold(), so they are released on every path.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from vbox_control import constants
from vbox_control._logging import LogSink, OperationLog, get_logger
from vbox_control.config import LifecycleConfig
from vbox_control.control import ControlAdapter
from vbox_control.exceptions import OperationFailedError, OperationTimeoutError
from vbox_control.models import HALTED_STATES, DisplayType, LockKind, MachineState, Progress, StopMode
from vbox_control.session import SessionCoordinator

logger = get_logger(__name__)


class MachineLifecycleController:
    """Drives one host's machines to Running or halted states.

    Holds no per-machine state: concurrent operations on different
    machines may share a controller. Operations on the same machine must
    be serialized by the caller (see PerMachineSerializer).
    """

    def __init__(
        self,
        adapter: ControlAdapter,
        config: LifecycleConfig | None = None,
        *,
        log_sink: LogSink | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or LifecycleConfig()
        self._log_sink = log_sink

    def _operation(self, machine_name: str) -> tuple[OperationLog, SessionCoordinator]:
        log = OperationLog(logger, machine_name, self._log_sink)
        return log, SessionCoordinator.from_config(self.adapter, self.config, log)

    @asynccontextmanager
    async def _deadline(self, machine_name: str, transition: str) -> AsyncIterator[None]:
        try:
            async with asyncio.timeout(self.config.operation_timeout):
                yield
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"Could not {transition} machine {machine_name!r} within {self.config.operation_timeout}s",
                {"machine": machine_name, "transition": transition, "timeout": self.config.operation_timeout},
            ) from e

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def start(
        self,
        machine_name: str,
        snapshot: str | None = None,
        display_type: DisplayType = constants.DEFAULT_DISPLAY_TYPE,
    ) -> None:
        """Bring the machine to Running, reverting to ``snapshot`` first if given.

        Args:
            machine_name: Machine on this adapter's host.
            snapshot: Snapshot name or UUID to restore before launching.
            display_type: Front-end for launchVMProcess.

        Raises:
            MachineNotFoundError: No such machine.
            SnapshotNotFoundError: No such snapshot.
            SessionLockError: A session could not be acquired.
            OperationFailedError: A remote action returned non-zero.
            OperationTimeoutError: A wait exceeded its budget.
        """
        log, sessions = self._operation(machine_name)
        log.info("Starting machine %s ...", machine_name)

        async with self._deadline(machine_name, "start"):
            await self.adapter.find_machine(machine_name)
            state = await self._wait_for_stable_state(machine_name, log)

            if state is MachineState.RUNNING:
                log.info("Machine %s already running", machine_name)
                return

            snapshot_id = await self._resolve_snapshot(machine_name, snapshot, log)

            if state in (MachineState.STUCK, MachineState.PAUSED) or snapshot_id is not None:
                log.info("Preparing machine %s from state %s", machine_name, state.value)
                await self._prepare_for_launch(machine_name, state, snapshot_id, sessions, log)
                state = await self._wait_for_stable_state(machine_name, log)
                if state is MachineState.RUNNING:
                    log.info("Machine %s started", machine_name)
                    return

            log.info("Starting machine %s from state %s", machine_name, state.value)
            async with sessions.hold(machine_name, LockKind.LAUNCH) as session:
                log.info("Launching machine %s (%s)", machine_name, display_type.value)
                progress = await self.adapter.launch_process(machine_name, session, display_type)
                await self._complete(progress, machine_name, log)

        log.info("Machine %s started", machine_name)

    async def _prepare_for_launch(
        self,
        machine_name: str,
        state: MachineState,
        snapshot_id: str | None,
        sessions: SessionCoordinator,
        log: OperationLog,
    ) -> None:
        async with sessions.hold(machine_name, LockKind.SHARED) as session:
            if state is MachineState.PAUSED and snapshot_id is None:
                log.info("Resuming machine %s ...", machine_name)
                await self.adapter.resume(session)
                return
            if state in (MachineState.STUCK, MachineState.PAUSED):
                log.info("Powering down machine %s ...", machine_name)
                await self._complete(await self.adapter.power_down(session), machine_name, log)

        if snapshot_id is not None:
            await self._restore(machine_name, snapshot_id, sessions, log)

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    async def stop(
        self,
        machine_name: str,
        snapshot: str | None = None,
        stop_mode: StopMode = constants.DEFAULT_STOP_MODE,
    ) -> None:
        """Halt the machine according to ``stop_mode``.

        With POWER_DOWN (or a Stuck machine) the machine is powered off and,
        if ``snapshot`` is given, reverted to it. With PAUSE_AND_SAVE its
        state is saved; ``snapshot`` is not applied.

        Raises:
            MachineNotFoundError: No such machine.
            SnapshotNotFoundError: No such snapshot.
            SessionLockError: A session could not be acquired.
            OperationFailedError: A remote action returned non-zero.
            OperationTimeoutError: A wait exceeded its budget.
        """
        log, sessions = self._operation(machine_name)
        log.info("Stopping machine %s ...", machine_name)

        async with self._deadline(machine_name, "stop"):
            await self.adapter.find_machine(machine_name)
            state = await self._wait_for_stable_state(machine_name, log)

            if state in HALTED_STATES:
                log.info("Machine %s already stopped (%s)", machine_name, state.value)
                return

            snapshot_id = await self._resolve_snapshot(machine_name, snapshot, log)

            log.info("Stopping machine %s from state %s", machine_name, state.value)
            if state is MachineState.STUCK or stop_mode is StopMode.POWER_DOWN:
                async with sessions.hold(machine_name, LockKind.SHARED) as session:
                    log.info("Powering down machine %s ...", machine_name)
                    await self._complete(await self.adapter.power_down(session), machine_name, log)
                if snapshot_id is not None:
                    await self._restore(machine_name, snapshot_id, sessions, log)
            else:
                async with sessions.hold(machine_name, LockKind.SHARED) as session:
                    log.info("Saving state of machine %s ...", machine_name)
                    await self._complete(await self.adapter.save_state(session), machine_name, log)

        log.info("Machine %s stopped", machine_name)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _restore(
        self,
        machine_name: str,
        snapshot_id: str,
        sessions: SessionCoordinator,
        log: OperationLog,
    ) -> None:
        # Restore always runs under a freshly acquired Write session
        async with sessions.hold(machine_name, LockKind.WRITE) as session:
            log.info("Reverting machine %s to snapshot %s", machine_name, snapshot_id)
            await self._complete(await self.adapter.restore_snapshot(session, snapshot_id), machine_name, log)

    async def _resolve_snapshot(self, machine_name: str, snapshot: str | None, log: OperationLog) -> str | None:
        if snapshot is None:
            return None
        log.info("Looking for snapshot %s ...", snapshot)
        node = await self.adapter.find_snapshot(machine_name, snapshot)
        return node.id

    async def _wait_for_stable_state(self, machine_name: str, log: OperationLog) -> MachineState:
        """Poll the machine state until it leaves the transient sub-range."""
        log.info("Checking state of machine %s ...", machine_name)
        while self.adapter.is_transient(state := await self.adapter.get_state(machine_name)):
            log.info(
                "Machine %s in state %s (%d)",
                machine_name,
                state.value,
                self.adapter.state_ordinal(state),
            )
            await asyncio.sleep(self.config.state_poll_interval)
        return state

    async def _complete(self, progress: Progress, machine_name: str, log: OperationLog) -> None:
        """Await a remote action; raise OperationFailedError on a non-zero result."""
        log.info("Waiting for machine %s: %s ...", machine_name, progress.action)
        result_code = await self.adapter.await_completion(progress, self.config.completion_timeout)
        if result_code == 0:
            return
        error_text = await self.adapter.describe_error(progress)
        log.error("Machine %s %s failed (result %d): %s", machine_name, progress.action, result_code, error_text)
        raise OperationFailedError(
            f"{progress.action.capitalize()} of machine {machine_name!r} failed: {error_text or result_code}",
            {"machine": machine_name, "action": progress.action},
            result_code=result_code,
            error_text=error_text,
        )
