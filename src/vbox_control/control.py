"""Control adapters: one uniform operation set over each web-service revision.

ControlAdapter implements everything the revisions share. Subclasses
carry what differs between them:

- the machine-state ordinal table and its transient sub-range
- which interface owns saveState / restoreSnapshot (IConsole before 5.x,
  the session's IMachine after)
- the launchVMProcess parameter naming the front-end (``type`` / ``name``)
- how Shared/Write lock kinds map onto LockType

The lifecycle controller never branches on version; it only talks to the
ControlAdapter interface. Revisions are selected by adapter_for_version().

Usage:
    async with ControlAdapterV60(host, transport) as adapter:
        state = await adapter.get_state("win10")
"""

from __future__ import annotations

import asyncio
import types
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar, Self

from vbox_control import constants
from vbox_control._logging import get_logger
from vbox_control.config import HostConfig
from vbox_control.exceptions import (
    ControlConnectionError,
    MachineNotFoundError,
    OperationTimeoutError,
    RemoteFault,
    SessionLockError,
    SnapshotNotFoundError,
    UnsupportedVersionError,
)
from vbox_control.models import (
    DisplayType,
    LockKind,
    MachineRef,
    MachineState,
    Progress,
    Session,
    SessionState,
    SnapshotNode,
    flatten_snapshot_names,
)
from vbox_control.transport import WebServiceTransport

logger = get_logger(__name__)

# MachineState ordinals as published by the 4.2 / 4.3 SDK.
_STATE_ORDINALS_V4: Mapping[MachineState, int] = types.MappingProxyType(
    {
        MachineState.NULL: 0,
        MachineState.POWERED_OFF: 1,
        MachineState.SAVED: 2,
        MachineState.TELEPORTED: 3,
        MachineState.ABORTED: 4,
        MachineState.RUNNING: 5,
        MachineState.PAUSED: 6,
        MachineState.STUCK: 7,
        MachineState.TELEPORTING: 8,
        MachineState.LIVE_SNAPSHOTTING: 9,
        MachineState.STARTING: 10,
        MachineState.STOPPING: 11,
        MachineState.SAVING: 12,
        MachineState.RESTORING: 13,
        MachineState.TELEPORTING_PAUSED_VM: 14,
        MachineState.TELEPORTING_IN: 15,
        MachineState.FAULT_TOLERANT_SYNCING: 16,
        MachineState.DELETING_SNAPSHOT_ONLINE: 17,
        MachineState.DELETING_SNAPSHOT_PAUSED: 18,
        MachineState.RESTORING_SNAPSHOT: 19,
        MachineState.DELETING_SNAPSHOT: 20,
        MachineState.SETTING_UP: 21,
    }
)

# MachineState ordinals as published by the 5.2 / 6.x SDK (fault tolerance
# removed, online snapshotting split out).
_STATE_ORDINALS_V6: Mapping[MachineState, int] = types.MappingProxyType(
    {
        MachineState.NULL: 0,
        MachineState.POWERED_OFF: 1,
        MachineState.SAVED: 2,
        MachineState.TELEPORTED: 3,
        MachineState.ABORTED: 4,
        MachineState.RUNNING: 5,
        MachineState.PAUSED: 6,
        MachineState.STUCK: 7,
        MachineState.TELEPORTING: 8,
        MachineState.LIVE_SNAPSHOTTING: 9,
        MachineState.STARTING: 10,
        MachineState.STOPPING: 11,
        MachineState.SAVING: 12,
        MachineState.RESTORING: 13,
        MachineState.TELEPORTING_PAUSED_VM: 14,
        MachineState.TELEPORTING_IN: 15,
        MachineState.DELETING_SNAPSHOT_ONLINE: 16,
        MachineState.DELETING_SNAPSHOT_PAUSED: 17,
        MachineState.ONLINE_SNAPSHOTTING: 18,
        MachineState.RESTORING_SNAPSHOT: 19,
        MachineState.DELETING_SNAPSHOT: 20,
        MachineState.SETTING_UP: 21,
        MachineState.SNAPSHOTTING: 22,
    }
)


class ControlAdapter(ABC):
    """Uniform control operations bound to one host and its credentials.

    The only local state is the IVirtualBox reference obtained at logon.
    Every other call goes straight to the remote host.
    """

    api_version: ClassVar[str]
    """Revision this adapter implements (e.g. "6.0")."""

    FIRST_TRANSIENT: ClassVar[int]
    LAST_TRANSIENT: ClassVar[int]
    _STATE_ORDINALS: ClassVar[Mapping[MachineState, int]]

    def __init__(
        self,
        host: HostConfig,
        transport: WebServiceTransport,
        *,
        progress_poll_interval: float = constants.PROGRESS_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.host = host
        self._transport = transport
        self._progress_poll_interval = progress_poll_interval
        self._vbox: str | None = None

    async def __aenter__(self) -> Self:
        return await self.connect()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(host_id={self.host.host_id!r}, url={self.host.url!r})"

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    @property
    def _vbox_ref(self) -> str:
        if self._vbox is None:
            raise ControlConnectionError(
                f"Not connected to {self.host.url}",
                {"host_id": self.host.host_id},
            )
        return self._vbox

    async def _call(self, method: str, /, **params: Any) -> Any:
        return await self._transport.invoke(method, **params)

    async def connect(self) -> Self:
        """Log on to the web service.

        Raises:
            ControlConnectionError: Endpoint unreachable or logon refused.
        """
        logger.info(
            "Connecting to VirtualBox web service",
            extra={"host_id": self.host.host_id, "url": self.host.url, "api_version": self.api_version},
        )
        try:
            self._vbox = await self._call(
                "IWebsessionManager_logon",
                username=self.host.username,
                password=self.host.password.get_secret_value(),
            )
        except RemoteFault as e:
            raise ControlConnectionError(
                f"Logon to {self.host.url} as {self.host.username!r} failed: {e.fault_text}",
                {"host_id": self.host.host_id, "url": self.host.url},
            ) from e
        return self

    async def disconnect(self) -> None:
        """Log off and close the transport.

        Safe to call multiple times or if never connected. Faults are logged,
        never raised.
        """
        vbox, self._vbox = self._vbox, None
        if vbox is not None:
            try:
                await self._call("IWebsessionManager_logoff", refIVirtualBox=vbox)
            except Exception:  # noqa: BLE001 - Best effort cleanup
                logger.debug("Logoff error (ignored)", extra={"host_id": self.host.host_id}, exc_info=True)
        try:
            await self._transport.close()
        except Exception:  # noqa: BLE001 - Best effort cleanup
            logger.debug("Transport close error (ignored)", extra={"host_id": self.host.host_id}, exc_info=True)

    async def is_connected(self) -> bool:
        """Liveness probe: reads the server version. Never raises."""
        if self._vbox is None:
            return False
        try:
            await self.get_version()
        except Exception:  # noqa: BLE001 - any fault means "not alive"
            logger.warning(
                "Liveness probe failed",
                extra={"host_id": self.host.host_id, "url": self.host.url},
                exc_info=True,
            )
            return False
        return True

    async def get_version(self) -> str:
        return str(await self._call("IVirtualBox_getVersion", _this=self._vbox_ref))

    # -------------------------------------------------------------------------
    # Machines
    # -------------------------------------------------------------------------

    async def find_machine(self, machine_name: str) -> str:
        """Resolve a machine reference by name.

        Raises:
            MachineNotFoundError: No such machine on this host.
        """
        try:
            ref = await self._call("IVirtualBox_findMachine", _this=self._vbox_ref, nameOrId=machine_name)
        except RemoteFault as e:
            raise MachineNotFoundError(
                f"Cannot find machine {machine_name!r} on host {self.host.host_id}",
                {"machine": machine_name, "host_id": self.host.host_id, "fault": e.fault_text},
            ) from e
        if not ref:
            raise MachineNotFoundError(
                f"Cannot find machine {machine_name!r} on host {self.host.host_id}",
                {"machine": machine_name, "host_id": self.host.host_id},
            )
        return str(ref)

    async def list_machines(self) -> list[MachineRef]:
        refs = await self._call("IVirtualBox_getMachines", _this=self._vbox_ref) or []
        return [
            MachineRef(host_id=self.host.host_id, name=await self._call("IMachine_getName", _this=ref))
            for ref in refs
        ]

    async def get_state(self, machine_name: str) -> MachineState:
        machine = await self.find_machine(machine_name)
        return self._parse_state(await self._call("IMachine_getState", _this=machine))

    def is_transient(self, state: MachineState) -> bool:
        """True when the state's ordinal lies in this revision's transient sub-range."""
        return self.FIRST_TRANSIENT <= self.state_ordinal(state) <= self.LAST_TRANSIENT

    def state_ordinal(self, state: MachineState) -> int:
        try:
            return self._STATE_ORDINALS[state]
        except KeyError:
            raise UnsupportedVersionError(
                f"Machine state {state.value} is not defined by API {self.api_version}",
                self.api_version,
                {"state": state.value},
            ) from None

    def _parse_state(self, raw: Any) -> MachineState:
        try:
            state = MachineState(raw)
        except ValueError:
            raise UnsupportedVersionError(
                f"Unknown machine state {raw!r} for API {self.api_version}",
                self.api_version,
                {"state": raw},
            ) from None
        self.state_ordinal(state)  # rejects states this revision does not define
        return state

    def _parse_session_state(self, raw: Any) -> SessionState:
        try:
            return SessionState(raw)
        except ValueError:
            raise UnsupportedVersionError(
                f"Unknown session state {raw!r} for API {self.api_version}",
                self.api_version,
                {"session_state": raw},
            ) from None

    async def machine_session_state(self, machine_name: str) -> SessionState:
        machine = await self.find_machine(machine_name)
        return self._parse_session_state(await self._call("IMachine_getSessionState", _this=machine))

    async def get_mac_address(self, machine_name: str, slot: int = constants.PRIMARY_NETWORK_SLOT) -> str:
        machine = await self.find_machine(machine_name)
        network_adapter = await self._call("IMachine_getNetworkAdapter", _this=machine, slot=slot)
        return str(await self._call("INetworkAdapter_getMACAddress", _this=network_adapter))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def snapshot_tree(self, machine_name: str) -> SnapshotNode | None:
        """Load the machine's snapshot tree, or None when it has no snapshots.

        Walks from the current snapshot up to the root first, then loads the
        tree downwards keeping children in their stored order.
        """
        machine = await self.find_machine(machine_name)
        if not await self._call("IMachine_getSnapshotCount", _this=machine):
            return None
        root = await self._call("IMachine_getCurrentSnapshot", _this=machine)
        if not root:
            return None
        while parent := await self._call("ISnapshot_getParent", _this=root):
            root = parent
        return await self._load_snapshot(root)

    async def _load_snapshot(self, ref: str) -> SnapshotNode:
        node = SnapshotNode(
            id=await self._call("ISnapshot_getId", _this=ref),
            name=await self._call("ISnapshot_getName", _this=ref),
        )
        for child in await self._call("ISnapshot_getChildren", _this=ref) or []:
            node.add_child(await self._load_snapshot(child))
        return node

    async def list_snapshots(self, machine_name: str) -> list[str]:
        """Snapshot names, depth-first from the root snapshot."""
        return flatten_snapshot_names(await self.snapshot_tree(machine_name))

    async def find_snapshot(self, machine_name: str, name_or_id: str) -> SnapshotNode:
        """Look up one snapshot by name or UUID.

        Raises:
            SnapshotNotFoundError: The machine has no such snapshot.
        """
        machine = await self.find_machine(machine_name)
        context = {"machine": machine_name, "snapshot": name_or_id, "host_id": self.host.host_id}
        try:
            ref = await self._call("IMachine_findSnapshot", _this=machine, nameOrId=name_or_id)
        except RemoteFault as e:
            context["fault"] = e.fault_text
            raise SnapshotNotFoundError(f"Machine {machine_name!r} has no snapshot {name_or_id!r}", context) from e
        if not ref:
            raise SnapshotNotFoundError(f"Machine {machine_name!r} has no snapshot {name_or_id!r}", context)
        return SnapshotNode(
            id=await self._call("ISnapshot_getId", _this=ref),
            name=await self._call("ISnapshot_getName", _this=ref),
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def acquire_session(self, machine_name: str, lock_kind: LockKind) -> Session:
        """One lock attempt. Retrying is SessionCoordinator's job.

        A LAUNCH session is returned unlocked: launchVMProcess locks it.

        Raises:
            SessionLockError: lockMachine faulted (fault_text carries the reason).
        """
        session_ref = await self._call("IWebsessionManager_getSessionObject", refIVirtualBox=self._vbox_ref)
        session = Session(ref=str(session_ref), machine_name=machine_name, lock_kind=lock_kind)
        if lock_kind is LockKind.LAUNCH:
            return session

        machine = await self.find_machine(machine_name)
        try:
            await self._call(
                "IMachine_lockMachine",
                _this=machine,
                session=session.ref,
                lockType=self._lock_type(lock_kind),
            )
        except RemoteFault as e:
            raise SessionLockError(
                f"Cannot lock machine {machine_name!r}: {e.fault_text}",
                {"machine": machine_name, "lock_kind": lock_kind.value},
                fault_text=e.fault_text,
            ) from e
        return session

    async def release_session(self, session: Session) -> None:
        await self._call("ISession_unlockMachine", _this=session.ref)

    async def session_state(self, session: Session) -> SessionState:
        return self._parse_session_state(await self._call("ISession_getState", _this=session.ref))

    def _lock_type(self, lock_kind: LockKind) -> str:
        return lock_kind.value

    async def _console(self, session: Session) -> str:
        return str(await self._call("ISession_getConsole", _this=session.ref))

    async def _session_machine(self, session: Session) -> str:
        return str(await self._call("ISession_getMachine", _this=session.ref))

    async def _session_snapshot(self, session: Session, snapshot_id: str) -> str:
        machine = await self._session_machine(session)
        try:
            return str(await self._call("IMachine_findSnapshot", _this=machine, nameOrId=snapshot_id))
        except RemoteFault as e:
            raise SnapshotNotFoundError(
                f"Machine {session.machine_name!r} has no snapshot {snapshot_id!r}",
                {"machine": session.machine_name, "snapshot": snapshot_id, "fault": e.fault_text},
            ) from e

    # -------------------------------------------------------------------------
    # State-changing operations
    # -------------------------------------------------------------------------

    async def power_down(self, session: Session) -> Progress:
        console = await self._console(session)
        return Progress(ref=await self._call("IConsole_powerDown", _this=console), action="power down")

    async def resume(self, session: Session) -> None:
        """Resume a paused machine. Synchronous on the remote side, no progress."""
        await self._call("IConsole_resume", _this=await self._console(session))

    @abstractmethod
    async def save_state(self, session: Session) -> Progress: ...

    @abstractmethod
    async def restore_snapshot(self, session: Session, snapshot_id: str) -> Progress: ...

    @abstractmethod
    def _launch_params(self, session: Session, display_type: DisplayType) -> dict[str, Any]: ...

    async def launch_process(self, machine_name: str, session: Session, display_type: DisplayType) -> Progress:
        machine = await self.find_machine(machine_name)
        ref = await self._call("IMachine_launchVMProcess", _this=machine, **self._launch_params(session, display_type))
        return Progress(ref=ref, action="launch")

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    async def await_completion(self, progress: Progress, timeout: float) -> int:
        """Wait for a remote action and return its result code (0 = success).

        Only the calling task waits. On timeout the remote action keeps
        running; nothing is cancelled remotely.

        Raises:
            OperationTimeoutError: Not completed within ``timeout`` seconds.
        """
        try:
            async with asyncio.timeout(timeout):
                while not await self._call("IProgress_getCompleted", _this=progress.ref):
                    await asyncio.sleep(self._progress_poll_interval)
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"{progress.action} did not complete within {timeout}s",
                {"progress": progress.ref, "action": progress.action, "timeout": timeout},
            ) from e
        return int(await self._call("IProgress_getResultCode", _this=progress.ref))

    async def describe_error(self, progress: Progress) -> str:
        """Chained remote error text, newline separated ("" on success)."""
        if int(await self._call("IProgress_getResultCode", _this=progress.ref)) == 0:
            return ""
        lines: list[str] = []
        info = await self._call("IProgress_getErrorInfo", _this=progress.ref)
        while info:
            lines.append(str(await self._call("IVirtualBoxErrorInfo_getText", _this=info)))
            info = await self._call("IVirtualBoxErrorInfo_getNext", _this=info)
        return "\n".join(lines)


# =============================================================================
# Revisions
# =============================================================================


class ControlAdapterV42(ControlAdapter):
    """VirtualBox 4.2: console-owned snapshot/save, every lock taken Shared."""

    api_version = "4.2"
    FIRST_TRANSIENT = _STATE_ORDINALS_V4[MachineState.TELEPORTING]
    LAST_TRANSIENT = _STATE_ORDINALS_V4[MachineState.SETTING_UP]
    _STATE_ORDINALS = _STATE_ORDINALS_V4

    def _lock_type(self, lock_kind: LockKind) -> str:
        return LockKind.SHARED.value

    async def save_state(self, session: Session) -> Progress:
        console = await self._console(session)
        return Progress(ref=await self._call("IConsole_saveState", _this=console), action="save state")

    async def restore_snapshot(self, session: Session, snapshot_id: str) -> Progress:
        snapshot = await self._session_snapshot(session, snapshot_id)
        console = await self._console(session)
        ref = await self._call("IConsole_restoreSnapshot", _this=console, snapshot=snapshot)
        return Progress(ref=ref, action="restore snapshot")

    def _launch_params(self, session: Session, display_type: DisplayType) -> dict[str, Any]:
        return {"session": session.ref, "type": display_type.value, "environment": ""}


class ControlAdapterV43(ControlAdapterV42):
    """VirtualBox 4.3: as 4.2, with distinct Shared and Write locks."""

    api_version = "4.3"

    def _lock_type(self, lock_kind: LockKind) -> str:
        return lock_kind.value


class ControlAdapterV60(ControlAdapter):
    """VirtualBox 5.2 / 6.x: session-machine-owned snapshot/save."""

    api_version = "6.0"
    FIRST_TRANSIENT = _STATE_ORDINALS_V6[MachineState.TELEPORTING]
    LAST_TRANSIENT = _STATE_ORDINALS_V6[MachineState.SNAPSHOTTING]
    _STATE_ORDINALS = _STATE_ORDINALS_V6

    async def save_state(self, session: Session) -> Progress:
        machine = await self._session_machine(session)
        return Progress(ref=await self._call("IMachine_saveState", _this=machine), action="save state")

    async def restore_snapshot(self, session: Session, snapshot_id: str) -> Progress:
        snapshot = await self._session_snapshot(session, snapshot_id)
        machine = await self._session_machine(session)
        ref = await self._call("IMachine_restoreSnapshot", _this=machine, snapshot=snapshot)
        return Progress(ref=ref, action="restore snapshot")

    def _launch_params(self, session: Session, display_type: DisplayType) -> dict[str, Any]:
        # No VRDP front-end any more; VRDE is a machine setting, launch headless
        name = DisplayType.HEADLESS if display_type is DisplayType.VRDP else display_type
        return {"session": session.ref, "name": name.value, "environment": ""}


SUPPORTED_REVISIONS: tuple[tuple[str, type[ControlAdapter]], ...] = (
    ("4.2", ControlAdapterV42),
    ("4.3", ControlAdapterV43),
    ("5.2", ControlAdapterV60),
    ("6.0", ControlAdapterV60),
    ("6.1", ControlAdapterV60),
)
"""Reported version prefix -> adapter class."""


def adapter_for_version(version: str) -> type[ControlAdapter]:
    """Select the adapter class for a reported version string (e.g. "6.1.38r153438").

    Raises:
        UnsupportedVersionError: No adapter implements this revision.
    """
    for prefix, adapter_cls in SUPPORTED_REVISIONS:
        if version == prefix or version.startswith(f"{prefix}."):
            return adapter_cls
    raise UnsupportedVersionError(f"VirtualBox version {version} not supported", version)
