"""Workload hooks: start a machine before a workload, stop it after.

The orchestration platform calls before_workload() when a workload is
about to run on a machine and after_workload() when it has finished.
Each hook maps onto ControlService.start / stop using the machine's
MachineBinding.
"""

from __future__ import annotations

import asyncio

from pydantic import BaseModel, ConfigDict, Field

from vbox_control import constants
from vbox_control._logging import LogSink, OperationLog, get_logger
from vbox_control.models import DisplayType, MachineRef, OperationResult, StopMode
from vbox_control.service import ControlService

logger = get_logger(__name__)


class MachineBinding(BaseModel):
    """How one agent machine is driven around its workloads."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    machine: MachineRef
    snapshot: str | None = Field(default=None, description="Snapshot to start from and revert to")
    display_type: DisplayType = Field(default=constants.DEFAULT_DISPLAY_TYPE)
    stop_mode: StopMode = Field(default=constants.DEFAULT_STOP_MODE)
    revert_after_workload: bool = Field(
        default=False,
        description="Revert to the snapshot when stopping after a workload",
    )
    startup_wait_seconds: float = Field(
        default=constants.DEFAULT_STARTUP_WAIT_SECONDS,
        ge=0,
        description="Seconds to let the guest boot after a successful start",
    )


class WorkloadHooks:
    """Platform trigger points bound to a ControlService."""

    def __init__(self, service: ControlService) -> None:
        self.service = service

    async def before_workload(self, binding: MachineBinding, log_sink: LogSink | None = None) -> OperationResult:
        """Start the machine, then wait for the guest to become usable.

        The startup wait is skipped when the start failed.
        """
        log = OperationLog(logger, binding.machine.name, log_sink)
        log.info("Starting virtual machine %s", binding.machine)
        result = await self.service.start(
            binding.machine,
            binding.snapshot,
            binding.display_type,
            log_sink=log_sink,
        )
        if not result.ok:
            log.error("Virtual machine %s did not start: %s", binding.machine, result.reason)
            return result

        if binding.startup_wait_seconds:
            log.info("Waiting for %s seconds for the virtual machine to be ready", binding.startup_wait_seconds)
            await asyncio.sleep(binding.startup_wait_seconds)
        return result

    async def after_workload(self, binding: MachineBinding, log_sink: LogSink | None = None) -> OperationResult:
        """Stop the machine, reverting to its snapshot only if the binding asks for it."""
        log = OperationLog(logger, binding.machine.name, log_sink)
        snapshot = binding.snapshot if binding.revert_after_workload else None
        if snapshot is not None:
            log.info("Stopping virtual machine %s and reverting to snapshot %s", binding.machine, snapshot)
        else:
            log.info("Stopping virtual machine %s", binding.machine)
        result = await self.service.stop(
            binding.machine,
            snapshot,
            binding.stop_mode,
            log_sink=log_sink,
        )
        if not result.ok:
            log.error("Virtual machine %s did not stop: %s", binding.machine, result.reason)
        return result
