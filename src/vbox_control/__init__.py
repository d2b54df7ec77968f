"""vbox-control: Lifecycle control for machines on remote VirtualBox hosts.

Drives machines to Running or halted states from any state they are in,
through the VirtualBox web service (vboxwebsrv), optionally reverting to a
snapshot along the way.

Quick Start:
    ```python
    from vbox_control import ControlService, HostConfig, MachineRef

    host = HostConfig(host_id="lab", url="http://vbox-lab:18083", username="builder", password="s3cret")
    async with ControlService([host], transport_factory) as service:
        result = await service.start(MachineRef(host_id="lab", name="win10"), snapshot="clean")
        print(result.ok, result.reason)
    ```

Around a workload:
    ```python
    from vbox_control import MachineBinding, WorkloadHooks

    hooks = WorkloadHooks(service)
    binding = MachineBinding(machine=ref, snapshot="clean", stop_mode="powerdown", revert_after_workload=True)
    await hooks.before_workload(binding, log_sink=console.write)
    ...
    await hooks.after_workload(binding, log_sink=console.write)
    ```

Supported API revisions: 4.2, 4.3, 5.2, 6.0, 6.1.

The SOAP binding itself is supplied by the caller as a transport factory
(see vbox_control.transport.WebServiceTransport).
"""

from importlib.metadata import PackageNotFoundError, version

from vbox_control.config import HostConfig, LifecycleConfig
from vbox_control.control import (
    ControlAdapter,
    ControlAdapterV42,
    ControlAdapterV43,
    ControlAdapterV60,
    adapter_for_version,
)
from vbox_control.exceptions import (
    TIMED_OUT_RESULT_CODE,
    ControlConnectionError,
    MachineNotFoundError,
    NotFoundError,
    OperationFailedError,
    OperationTimeoutError,
    PermanentError,
    RemoteFault,
    SessionLockError,
    SnapshotNotFoundError,
    TransientError,
    UnknownHostError,
    UnsupportedVersionError,
    VBoxControlError,
)
from vbox_control.hooks import MachineBinding, WorkloadHooks
from vbox_control.lifecycle import MachineLifecycleController
from vbox_control.models import (
    DisplayType,
    LockKind,
    MachineRef,
    MachineState,
    OperationResult,
    Progress,
    Session,
    SessionState,
    SnapshotNode,
    StopMode,
)
from vbox_control.registry import ConnectionRegistry
from vbox_control.serializer import PerMachineSerializer
from vbox_control.service import ControlService
from vbox_control.session import SessionCoordinator
from vbox_control.settings import Settings
from vbox_control.transport import TransportFactory, WebServiceTransport

try:
    __version__ = version("vbox-control")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "TIMED_OUT_RESULT_CODE",
    "ConnectionRegistry",
    "ControlAdapter",
    "ControlAdapterV42",
    "ControlAdapterV43",
    "ControlAdapterV60",
    "ControlConnectionError",
    "ControlService",
    "DisplayType",
    "HostConfig",
    "LifecycleConfig",
    "LockKind",
    "MachineBinding",
    "MachineLifecycleController",
    "MachineNotFoundError",
    "MachineRef",
    "MachineState",
    "NotFoundError",
    "OperationFailedError",
    "OperationResult",
    "OperationTimeoutError",
    "PerMachineSerializer",
    "PermanentError",
    "Progress",
    "RemoteFault",
    "Session",
    "SessionCoordinator",
    "SessionLockError",
    "SessionState",
    "Settings",
    "SnapshotNode",
    "SnapshotNotFoundError",
    "StopMode",
    "TransientError",
    "TransportFactory",
    "UnknownHostError",
    "UnsupportedVersionError",
    "VBoxControlError",
    "WebServiceTransport",
    "WorkloadHooks",
    "__version__",
]
