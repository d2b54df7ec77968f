"""ControlService - the collaborator-facing API.

Combines the ConnectionRegistry, PerMachineSerializer and
MachineLifecycleController behind five calls:

    start / stop        -> OperationResult (never raise VBoxControlError)
    list_snapshots      -> snapshot names, pre-order from the root
    list_machines       -> MachineRef per registered machine on a host
    get_mac_address     -> MAC address of a machine's network adapter

Flow for start/stop:
    serializer lock (machine name) -> registry.resolve(host) ->
    MachineLifecycleController -> SessionCoordinator + ControlAdapter

A ControlConnectionError from any call drops the host's cached adapter
if it no longer answers, so the next call reconnects. Connecting to a
host is bounded by the operation timeout.

Example:
    ```python
    async with ControlService([host], transport_factory) as service:
        result = await service.start(MachineRef(host_id="lab", name="win10"), snapshot="clean")
        if not result.ok:
            print(result.reason)
    ```
"""

from __future__ import annotations

import asyncio
import types
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Self

from vbox_control import constants
from vbox_control._logging import LogSink, OperationLog, get_logger
from vbox_control.config import HostConfig, LifecycleConfig
from vbox_control.control import ControlAdapter
from vbox_control.exceptions import ControlConnectionError, OperationTimeoutError, VBoxControlError
from vbox_control.lifecycle import MachineLifecycleController
from vbox_control.models import DisplayType, MachineRef, OperationResult, StopMode
from vbox_control.registry import ConnectionRegistry
from vbox_control.serializer import PerMachineSerializer
from vbox_control.transport import TransportFactory

logger = get_logger(__name__)


class ControlService:
    """Start/stop machines on registered VirtualBox hosts.

    Attributes:
        config: Lifecycle knobs applied to every operation.
        registry: Adapter cache, one live adapter per host.
        serializer: Per-machine-name operation lock.
    """

    def __init__(
        self,
        hosts: Iterable[HostConfig],
        transport_factory: TransportFactory,
        config: LifecycleConfig | None = None,
    ) -> None:
        self.config = config or LifecycleConfig()
        self.registry = ConnectionRegistry(
            transport_factory,
            hosts,
            progress_poll_interval=self.config.progress_poll_interval,
        )
        self.serializer = PerMachineSerializer()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Disconnect from every host."""
        await self.registry.close()

    @asynccontextmanager
    async def _connected(self, host_id: str) -> AsyncIterator[ControlAdapter]:
        adapter = await self._resolve(host_id)
        try:
            yield adapter
        except ControlConnectionError:
            await self.registry.invalidate(host_id, adapter)
            raise

    async def _resolve(self, host_id: str) -> ControlAdapter:
        """Resolve the host's adapter within the operation deadline."""
        timeout = self.config.operation_timeout
        try:
            async with asyncio.timeout(timeout):
                return await self.registry.resolve(host_id)
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"Could not connect to host {host_id!r} within {timeout}s",
                {"host_id": host_id, "timeout": timeout},
            ) from e

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(
        self,
        machine: MachineRef,
        snapshot: str | None = None,
        display_type: DisplayType = constants.DEFAULT_DISPLAY_TYPE,
        *,
        log_sink: LogSink | None = None,
    ) -> OperationResult:
        """Bring the machine to Running, optionally reverting to ``snapshot`` first."""
        return await self._run(
            machine,
            "start",
            lambda controller: controller.start(machine.name, snapshot, display_type),
            log_sink,
        )

    async def stop(
        self,
        machine: MachineRef,
        snapshot: str | None = None,
        stop_mode: StopMode = constants.DEFAULT_STOP_MODE,
        *,
        log_sink: LogSink | None = None,
    ) -> OperationResult:
        """Halt the machine per ``stop_mode``; revert to ``snapshot`` after a power down."""
        return await self._run(
            machine,
            "stop",
            lambda controller: controller.stop(machine.name, snapshot, stop_mode),
            log_sink,
        )

    async def _run(
        self,
        machine: MachineRef,
        transition: str,
        action: Callable[[MachineLifecycleController], Awaitable[None]],
        log_sink: LogSink | None,
    ) -> OperationResult:
        async def operation() -> None:
            async with self._connected(machine.host_id) as adapter:
                await action(MachineLifecycleController(adapter, self.config, log_sink=log_sink))

        try:
            await self.serializer.with_lock(machine.name, operation)
        except VBoxControlError as e:
            log = OperationLog(logger, machine.name, log_sink)
            log.error(
                "Could not %s machine %s: %s",
                transition,
                machine,
                e.message,
                extra={"host_id": machine.host_id, "transition": transition, "error_type": type(e).__name__},
            )
            return OperationResult.failure(e.message, type(e).__name__)
        return OperationResult.success()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def list_snapshots(self, host_id: str, machine_name: str) -> list[str]:
        """Snapshot names of the machine, depth-first from the root snapshot.

        Raises:
            UnknownHostError: host_id not registered.
            MachineNotFoundError: No such machine on the host.
            ControlConnectionError: Host unreachable.
        """
        async with self._connected(host_id) as adapter:
            return await adapter.list_snapshots(machine_name)

    async def list_machines(self, host_id: str) -> list[MachineRef]:
        async with self._connected(host_id) as adapter:
            return await adapter.list_machines()

    async def get_mac_address(self, machine: MachineRef, slot: int = constants.PRIMARY_NETWORK_SLOT) -> str:
        async with self._connected(machine.host_id) as adapter:
            return await adapter.get_mac_address(machine.name, slot)
