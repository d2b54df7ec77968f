"""In-memory VirtualBox web service for tests.

FakeVirtualBox answers the same ``<Interface>_<method>`` operations the
adapters call, per API revision, and records every call. Managed objects
are opaque string references, as on the real service.

Fault injection knobs:
    - machine.lock_races: next N lockMachine calls fault "already locked"
    - machine.lock_fault: lockMachine always faults with this text
    - machine.pending_states: states getState reports before the real one
    - vbox.spawning_reads: ISession_getState reports Spawning N times after a lock
    - vbox.fail_actions[method]: progress completes with (code, [error texts])
    - vbox.hang_actions: methods whose progress never completes
    - vbox.alive: False makes every call fail as unreachable
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any

from vbox_control.exceptions import ControlConnectionError, RemoteFault
from vbox_control.models import MachineState, SessionState

# Calls that open, close or act on a session (anything beyond reads)
SIDE_EFFECT_METHODS = frozenset(
    {
        "IWebsessionManager_getSessionObject",
        "IMachine_lockMachine",
        "ISession_unlockMachine",
        "IMachine_launchVMProcess",
        "IConsole_powerDown",
        "IConsole_resume",
        "IConsole_saveState",
        "IConsole_restoreSnapshot",
        "IMachine_saveState",
        "IMachine_restoreSnapshot",
    }
)

_V4_ONLY = frozenset({"IConsole_saveState", "IConsole_restoreSnapshot"})
_V6_ONLY = frozenset({"IMachine_saveState", "IMachine_restoreSnapshot"})

_STOPPABLE = frozenset({MachineState.RUNNING, MachineState.PAUSED, MachineState.STUCK})


# ============================================================================
# Remote objects
# ============================================================================


@dataclass(eq=False)
class FakeSnapshot:
    ref: str
    id: str
    name: str
    parent: FakeSnapshot | None = None
    children: list[FakeSnapshot] = field(default_factory=list)


@dataclass(eq=False)
class FakeMachine:
    ref: str
    name: str
    state: MachineState = MachineState.POWERED_OFF
    session_state: SessionState = SessionState.UNLOCKED
    mac_address: str = "080027AABBCC"
    snapshots: list[FakeSnapshot] = field(default_factory=list)
    current_snapshot: FakeSnapshot | None = None
    pending_states: list[MachineState] = field(default_factory=list)
    lock_races: int = 0
    lock_fault: str | None = None
    locked_by: FakeSession | None = None

    def snapshot(self, name_or_id: str) -> FakeSnapshot | None:
        for snapshot in self.snapshots:
            if name_or_id in (snapshot.id, snapshot.name):
                return snapshot
        return None


@dataclass(eq=False)
class FakeSession:
    ref: str
    state: SessionState = SessionState.UNLOCKED
    machine: FakeMachine | None = None
    lock_type: str | None = None
    spawning_reads: int = 0


@dataclass(eq=False)
class FakeProgress:
    ref: str
    method: str
    result_code: int = 0
    completed: bool = True
    errors: list[str] = field(default_factory=list)


@dataclass(eq=False)
class FakeErrorInfo:
    ref: str
    text: str
    next: FakeErrorInfo | None = None


# ============================================================================
# Service
# ============================================================================


class FakeVirtualBox:
    """One fake vboxwebsrv endpoint."""

    def __init__(self, version: str = "6.1.38r153438", *, username: str = "builder", password: str = "secret") -> None:
        self.version = version
        self.username = username
        self.password = password
        self.alive = True
        self.spawning_reads = 0
        self.fail_actions: dict[str, tuple[int, list[str]]] = {}
        self.hang_actions: set[str] = set()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.lock_types: list[str] = []
        self.launches: list[dict[str, Any]] = []
        self.lock_conflicts = 0
        self.transports: list[FakeTransport] = []
        self.machines: dict[str, FakeMachine] = {}
        self._objects: dict[str, Any] = {}
        self._logons: set[str] = set()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Test setup
    # ------------------------------------------------------------------

    @property
    def is_v4(self) -> bool:
        return self.version.startswith("4.")

    def _new_ref(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    def _register(self, obj: Any) -> Any:
        self._objects[obj.ref] = obj
        return obj

    def add_machine(self, name: str, state: MachineState = MachineState.POWERED_OFF, **kwargs: Any) -> FakeMachine:
        machine = self._register(FakeMachine(ref=self._new_ref("machine"), name=name, state=state, **kwargs))
        self.machines[name] = machine
        return machine

    def add_snapshot(self, machine: FakeMachine, name: str, parent: str | None = None) -> FakeSnapshot:
        """Add a snapshot under ``parent`` (by name) and make it current."""
        parent_node = machine.snapshot(parent) if parent is not None else None
        snapshot = self._register(
            FakeSnapshot(
                ref=self._new_ref("snapshot"),
                id=f"{{0000-{next(self._ids):04d}}}",
                name=name,
                parent=parent_node,
            )
        )
        if parent_node is not None:
            parent_node.children.append(snapshot)
        machine.snapshots.append(snapshot)
        machine.current_snapshot = snapshot
        return snapshot

    def restart(self) -> None:
        """Forget every logon, as a restarted vboxwebsrv does."""
        self._logons.clear()

    def factory(self, url: str) -> FakeTransport:
        transport = FakeTransport(self, url)
        self.transports.append(transport)
        return transport

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def side_effect_calls(self) -> list[str]:
        return [method for method in self.methods() if method in SIDE_EFFECT_METHODS]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, method: str, params: dict[str, Any]) -> Any:
        await asyncio.sleep(0)
        if not self.alive:
            raise ControlConnectionError(f"Connection refused: {method}")
        self.calls.append((method, params))
        if (self.is_v4 and method in _V6_ONLY) or (not self.is_v4 and method in _V4_ONLY):
            raise RemoteFault(f"Method {method} is not supported by API {self.version}")
        handler = getattr(self, method, None)
        if handler is None:
            raise RemoteFault(f"Unknown method {method}")
        return handler(**params)

    def _get(self, ref: Any, kind: type) -> Any:
        obj = self._objects.get(ref)
        if not isinstance(obj, kind):
            raise RemoteFault(f"Invalid managed object reference {ref!r}")
        return obj

    def _vbox(self, ref: str) -> None:
        if ref not in self._logons:
            raise RemoteFault(f"Invalid managed object reference {ref!r}")

    def _progress(self, method: str, apply: Any) -> str:
        if method in self.hang_actions:
            progress = FakeProgress(ref=self._new_ref("progress"), method=method, completed=False)
        elif method in self.fail_actions:
            code, errors = self.fail_actions[method]
            progress = FakeProgress(ref=self._new_ref("progress"), method=method, result_code=code, errors=errors)
        else:
            apply()
            progress = FakeProgress(ref=self._new_ref("progress"), method=method)
        return self._register(progress).ref

    def _session_machine(self, session_ref: str) -> FakeMachine:
        session = self._get(session_ref, FakeSession)
        if session.state is not SessionState.LOCKED or session.machine is None:
            raise RemoteFault("The session is not locked (session state: Unlocked)")
        return session.machine

    # ------------------------------------------------------------------
    # IWebsessionManager / IVirtualBox
    # ------------------------------------------------------------------

    def IWebsessionManager_logon(self, username: str, password: str) -> str:
        if (username, password) != (self.username, self.password):
            raise RemoteFault("Invalid username or password")
        ref = self._new_ref("vbox")
        self._logons.add(ref)
        return ref

    def IWebsessionManager_logoff(self, refIVirtualBox: str) -> None:
        self._logons.discard(refIVirtualBox)

    def IWebsessionManager_getSessionObject(self, refIVirtualBox: str) -> str:
        self._vbox(refIVirtualBox)
        return self._register(FakeSession(ref=self._new_ref("session"))).ref

    def IVirtualBox_getVersion(self, _this: str) -> str:
        self._vbox(_this)
        return self.version

    def IVirtualBox_findMachine(self, _this: str, nameOrId: str) -> str:
        self._vbox(_this)
        if nameOrId not in self.machines:
            raise RemoteFault(f"Could not find a registered machine named '{nameOrId}'")
        return self.machines[nameOrId].ref

    def IVirtualBox_getMachines(self, _this: str) -> list[str]:
        self._vbox(_this)
        return [machine.ref for machine in self.machines.values()]

    # ------------------------------------------------------------------
    # IMachine
    # ------------------------------------------------------------------

    def IMachine_getName(self, _this: str) -> str:
        return self._get(_this, FakeMachine).name

    def IMachine_getState(self, _this: str) -> str:
        machine = self._get(_this, FakeMachine)
        if machine.pending_states:
            return machine.pending_states.pop(0).value
        return machine.state.value

    def IMachine_getSessionState(self, _this: str) -> str:
        return self._get(_this, FakeMachine).session_state.value

    def IMachine_lockMachine(self, _this: str, session: str, lockType: str) -> None:
        machine = self._get(_this, FakeMachine)
        fake_session = self._get(session, FakeSession)
        already_locked = f"The machine '{machine.name}' is already locked for a session (or being unlocked)"
        if machine.lock_races > 0:
            machine.lock_races -= 1
            raise RemoteFault(already_locked)
        if machine.lock_fault is not None:
            raise RemoteFault(machine.lock_fault)
        if machine.locked_by is not None:
            self.lock_conflicts += 1
            raise RemoteFault(already_locked)
        self.lock_types.append(lockType)
        fake_session.state = SessionState.LOCKED
        fake_session.machine = machine
        fake_session.lock_type = lockType
        fake_session.spawning_reads = self.spawning_reads
        machine.session_state = SessionState.LOCKED
        machine.locked_by = fake_session

    def IMachine_launchVMProcess(self, _this: str, session: str, environment: str, **front_end: str) -> str:
        machine = self._get(_this, FakeMachine)
        fake_session = self._get(session, FakeSession)
        expected = "type" if self.is_v4 else "name"
        if set(front_end) != {expected}:
            raise RemoteFault(f"launchVMProcess expects parameter {expected!r}, got {sorted(front_end)}")
        if machine.locked_by is not None:
            self.lock_conflicts += 1
            raise RemoteFault(f"The machine '{machine.name}' is already locked for a session (or being unlocked)")
        if machine.state not in (MachineState.POWERED_OFF, MachineState.ABORTED, MachineState.SAVED):
            raise RemoteFault(f"The machine is not powered off (state: {machine.state.value})")
        self.launches.append({"machine": machine.name, **front_end})

        def apply() -> None:
            fake_session.state = SessionState.LOCKED
            fake_session.machine = machine
            machine.session_state = SessionState.LOCKED
            machine.locked_by = fake_session
            machine.state = MachineState.RUNNING

        return self._progress("IMachine_launchVMProcess", apply)

    def IMachine_getSnapshotCount(self, _this: str) -> int:
        return len(self._get(_this, FakeMachine).snapshots)

    def IMachine_getCurrentSnapshot(self, _this: str) -> str | None:
        current = self._get(_this, FakeMachine).current_snapshot
        return current.ref if current is not None else None

    def IMachine_findSnapshot(self, _this: str, nameOrId: str) -> str:
        snapshot = self._get(_this, FakeMachine).snapshot(nameOrId)
        if snapshot is None:
            raise RemoteFault(f"Could not find a snapshot named '{nameOrId}'")
        return snapshot.ref

    def IMachine_getNetworkAdapter(self, _this: str, slot: int) -> str:
        machine = self._get(_this, FakeMachine)
        if slot != 0:
            raise RemoteFault(f"Invalid network adapter slot {slot}")
        return f"{machine.ref}/nic{slot}"

    def INetworkAdapter_getMACAddress(self, _this: str) -> str:
        return self._get(_this.split("/")[0], FakeMachine).mac_address

    def IMachine_saveState(self, _this: str) -> str:
        return self._save_state(self._get(_this, FakeMachine), "IMachine_saveState")

    def IMachine_restoreSnapshot(self, _this: str, snapshot: str) -> str:
        return self._restore(self._get(_this, FakeMachine), snapshot, "IMachine_restoreSnapshot")

    # ------------------------------------------------------------------
    # ISession / IConsole
    # ------------------------------------------------------------------

    def ISession_getState(self, _this: str) -> str:
        session = self._get(_this, FakeSession)
        if session.spawning_reads > 0:
            session.spawning_reads -= 1
            return SessionState.SPAWNING.value
        return session.state.value

    def ISession_unlockMachine(self, _this: str) -> None:
        session = self._get(_this, FakeSession)
        if session.state is not SessionState.LOCKED or session.machine is None:
            raise RemoteFault("The session is not locked (session state: Unlocked)")
        machine = session.machine
        session.state = SessionState.UNLOCKED
        session.machine = None
        machine.session_state = SessionState.UNLOCKED
        machine.locked_by = None

    def ISession_getConsole(self, _this: str) -> str:
        machine = self._session_machine(_this)
        return f"{machine.ref}/console"

    def ISession_getMachine(self, _this: str) -> str:
        # The session's mutable machine shares the registered machine's object here
        return self._session_machine(_this).ref

    def _console_machine(self, console_ref: str) -> FakeMachine:
        return self._get(console_ref.split("/")[0], FakeMachine)

    def IConsole_powerDown(self, _this: str) -> str:
        machine = self._console_machine(_this)
        if machine.state not in _STOPPABLE:
            raise RemoteFault(f"Invalid machine state: {machine.state.value}")

        def apply() -> None:
            machine.state = MachineState.POWERED_OFF

        return self._progress("IConsole_powerDown", apply)

    def IConsole_resume(self, _this: str) -> None:
        machine = self._console_machine(_this)
        if machine.state is not MachineState.PAUSED:
            raise RemoteFault(f"Invalid machine state: {machine.state.value}")
        machine.state = MachineState.RUNNING

    def IConsole_saveState(self, _this: str) -> str:
        return self._save_state(self._console_machine(_this), "IConsole_saveState")

    def IConsole_restoreSnapshot(self, _this: str, snapshot: str) -> str:
        return self._restore(self._console_machine(_this), snapshot, "IConsole_restoreSnapshot")

    def _save_state(self, machine: FakeMachine, method: str) -> str:
        if machine.state not in (MachineState.RUNNING, MachineState.PAUSED):
            raise RemoteFault(f"Invalid machine state: {machine.state.value}")

        def apply() -> None:
            machine.state = MachineState.SAVED

        return self._progress(method, apply)

    def _restore(self, machine: FakeMachine, snapshot_ref: str, method: str) -> str:
        snapshot = self._get(snapshot_ref, FakeSnapshot)
        if machine.state in _STOPPABLE:
            raise RemoteFault(f"Cannot restore snapshot in state {machine.state.value}")

        def apply() -> None:
            machine.current_snapshot = snapshot
            machine.state = MachineState.POWERED_OFF

        return self._progress(method, apply)

    # ------------------------------------------------------------------
    # ISnapshot / IProgress / IVirtualBoxErrorInfo
    # ------------------------------------------------------------------

    def ISnapshot_getParent(self, _this: str) -> str | None:
        parent = self._get(_this, FakeSnapshot).parent
        return parent.ref if parent is not None else None

    def ISnapshot_getChildren(self, _this: str) -> list[str]:
        return [child.ref for child in self._get(_this, FakeSnapshot).children]

    def ISnapshot_getId(self, _this: str) -> str:
        return self._get(_this, FakeSnapshot).id

    def ISnapshot_getName(self, _this: str) -> str:
        return self._get(_this, FakeSnapshot).name

    def IProgress_getCompleted(self, _this: str) -> bool:
        return self._get(_this, FakeProgress).completed

    def IProgress_getResultCode(self, _this: str) -> int:
        return self._get(_this, FakeProgress).result_code

    def IProgress_getErrorInfo(self, _this: str) -> str | None:
        progress = self._get(_this, FakeProgress)
        info: FakeErrorInfo | None = None
        for text in reversed(progress.errors):
            info = self._register(FakeErrorInfo(ref=self._new_ref("errorinfo"), text=text, next=info))
        return info.ref if info is not None else None

    def IVirtualBoxErrorInfo_getText(self, _this: str) -> str:
        return self._get(_this, FakeErrorInfo).text

    def IVirtualBoxErrorInfo_getNext(self, _this: str) -> str | None:
        following = self._get(_this, FakeErrorInfo).next
        return following.ref if following is not None else None


class FakeTransport:
    """WebServiceTransport over a FakeVirtualBox."""

    def __init__(self, vbox: FakeVirtualBox, url: str) -> None:
        self.vbox = vbox
        self.url = url
        self.closed = False

    async def invoke(self, method: str, /, **params: Any) -> Any:
        if self.closed:
            raise ControlConnectionError(f"Transport to {self.url} is closed")
        return await self.vbox.dispatch(method, params)

    async def close(self) -> None:
        self.closed = True


class HangingTransport:
    """Transport to a host that accepts the connection but never answers."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False

    async def invoke(self, method: str, /, **params: Any) -> Any:
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


def fake_factory(endpoints: dict[str, FakeVirtualBox]) -> Any:
    """Transport factory routing each URL to its fake service."""

    def factory(url: str) -> FakeTransport:
        return endpoints[url].factory(url)

    return factory


# ============================================================================
# CLI
# ============================================================================
# The CLI loads its transport factory by "module:attribute" path, so the
# fake service it talks to lives at module level. Tests swap CLI_HOST for a
# fresh instance.

CLI_HOST = FakeVirtualBox()


def cli_transport(url: str) -> FakeTransport:
    return CLI_HOST.factory(url)
