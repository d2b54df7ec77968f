"""Data models for vbox-control."""

from __future__ import annotations

import weakref
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field


class MachineRef(BaseModel):
    """A machine on a specific remote host. Equality by value."""

    model_config = ConfigDict(frozen=True)

    host_id: str = Field(min_length=1, description="Registered host identifier")
    name: str = Field(min_length=1, description="Machine name on that host")

    def __str__(self) -> str:
        return f"{self.name}@{self.host_id}"


class MachineState(str, Enum):
    """Machine states, by their web-service enumeration names.

    Whether a state is transient is NOT a property of this enum: the
    ordinal values and the transient sub-range belong to the API revision
    and are tested by the adapter (ControlAdapter.is_transient).
    """

    NULL = "Null"
    POWERED_OFF = "PoweredOff"
    SAVED = "Saved"
    TELEPORTED = "Teleported"
    ABORTED = "Aborted"
    RUNNING = "Running"
    PAUSED = "Paused"
    STUCK = "Stuck"
    TELEPORTING = "Teleporting"
    LIVE_SNAPSHOTTING = "LiveSnapshotting"
    STARTING = "Starting"
    STOPPING = "Stopping"
    SAVING = "Saving"
    RESTORING = "Restoring"
    TELEPORTING_PAUSED_VM = "TeleportingPausedVM"
    TELEPORTING_IN = "TeleportingIn"
    FAULT_TOLERANT_SYNCING = "FaultTolerantSyncing"
    DELETING_SNAPSHOT_ONLINE = "DeletingSnapshotOnline"
    DELETING_SNAPSHOT_PAUSED = "DeletingSnapshotPaused"
    ONLINE_SNAPSHOTTING = "OnlineSnapshotting"
    RESTORING_SNAPSHOT = "RestoringSnapshot"
    DELETING_SNAPSHOT = "DeletingSnapshot"
    SETTING_UP = "SettingUp"
    SNAPSHOTTING = "Snapshotting"


HALTED_STATES: frozenset[MachineState] = frozenset(
    {MachineState.POWERED_OFF, MachineState.SAVED, MachineState.ABORTED}
)
"""Terminal states for a stop."""


class SessionState(str, Enum):
    """Session lock states. Spawning and Unlocking are in-flight transitions."""

    NULL = "Null"
    UNLOCKED = "Unlocked"
    LOCKED = "Locked"
    SPAWNING = "Spawning"
    UNLOCKING = "Unlocking"

    @property
    def is_transient(self) -> bool:
        return self in (SessionState.SPAWNING, SessionState.UNLOCKING)


class LockKind(str, Enum):
    """Lock requested for a session, matching the action about to run."""

    SHARED = "Shared"
    WRITE = "Write"
    LAUNCH = "VM"  # session object handed to launchVMProcess, locked remotely


class StopMode(str, Enum):
    """Operator policy for how a stop halts a running machine."""

    POWER_DOWN = "powerdown"
    PAUSE_AND_SAVE = "pause"


class DisplayType(str, Enum):
    """Front-end used when launching the machine process."""

    HEADLESS = "headless"
    GUI = "gui"
    SDL = "sdl"
    VRDP = "vrdp"


@dataclass(frozen=True)
class Session:
    """Handle on a remote session object.

    Owned exclusively by the lifecycle operation that acquired it and
    released on every exit path (see SessionCoordinator.hold).
    """

    ref: str
    machine_name: str
    lock_kind: LockKind


@dataclass(frozen=True)
class Progress:
    """Handle on a long-running remote action (IProgress)."""

    ref: str
    action: str


@dataclass(eq=False)
class SnapshotNode:
    """One node of a machine's snapshot tree.

    Children are kept in the order the host reports them. The parent link
    is a weak reference so the tree has no reference cycles.
    """

    id: str
    name: str
    children: list[SnapshotNode] = field(default_factory=list)
    _parent: weakref.ref[SnapshotNode] | None = field(default=None, repr=False)

    @property
    def parent(self) -> SnapshotNode | None:
        return self._parent() if self._parent is not None else None

    def add_child(self, child: SnapshotNode) -> SnapshotNode:
        child._parent = weakref.ref(self)
        self.children.append(child)
        return child

    def root(self) -> SnapshotNode:
        """Follow parent links up to the oldest snapshot."""
        node = self
        while (parent := node.parent) is not None:
            node = parent
        return node

    def walk(self) -> Iterator[SnapshotNode]:
        """Pre-order traversal: this node, then each child's subtree in order."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, name_or_id: str) -> SnapshotNode | None:
        for node in self.walk():
            if name_or_id in (node.id, node.name):
                return node
        return None


def flatten_snapshot_names(node: SnapshotNode | None) -> list[str]:
    """Names of the whole tree containing ``node``, pre-order from its root."""
    if node is None:
        return []
    return [n.name for n in node.root().walk()]


class OperationResult(BaseModel):
    """Outcome of a Start/Stop request as seen by collaborators."""

    model_config = ConfigDict(frozen=True)

    ok: bool = Field(description="True when the machine reached the requested state")
    reason: str | None = Field(default=None, description="Failure description (None on success)")
    error: str | None = Field(default=None, description="Error class name (None on success)")

    @classmethod
    def success(cls) -> Self:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str, error: str | None = None) -> Self:
        return cls(ok=False, reason=reason, error=error)
