"""Exception hierarchy for vbox-control.

All exceptions inherit from VBoxControlError base class.

Hierarchy:
    VBoxControlError (base)
    ├── TransientError (retryable marker base)
    │   ├── SessionLockError        ← session could not be locked after bounded retries
    │   ├── ControlConnectionError  ← host unreachable / logon refused
    │   └── OperationTimeoutError   ← wait exceeded budget, remote outcome unknown
    ├── PermanentError (non-retryable marker base)
    │   ├── NotFoundError
    │   │   ├── MachineNotFoundError
    │   │   ├── SnapshotNotFoundError
    │   │   └── UnknownHostError
    │   ├── OperationFailedError    ← remote async action returned non-zero
    │   └── UnsupportedVersionError ← no adapter for the host's API revision
    └── RemoteFault                 ← raw web-service fault (raised by transports)
"""

from __future__ import annotations

from typing import Any, Final

TIMED_OUT_RESULT_CODE: Final[int] = -1
"""Result code reported for waits that timed out.

Distinct from any remote result code: the web service reports COM-style
HRESULTs, and -1 (0xFFFFFFFF) is not one the control API produces.
"""


class VBoxControlError(Exception):
    """Base exception for all vbox-control errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class RemoteFault(VBoxControlError):
    """The web service answered a call with a fault.

    Raised by transports. Adapters translate faults into the specific
    errors below where the operation gives them meaning (lookup, lock).

    Attributes:
        fault_text: Fault string as reported by the remote side
    """

    def __init__(self, fault_text: str, context: dict[str, Any] | None = None):
        super().__init__(fault_text, context)
        self.fault_text = fault_text


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(VBoxControlError):
    """Base for transient errors that may succeed on retry.

    Retrying the whole lifecycle operation at a higher level is reasonable.
    """


class PermanentError(VBoxControlError):
    """Base for permanent errors that won't succeed on retry.

    Retrying without a configuration or remote-side change is pointless.
    """


# =============================================================================
# Transient Errors
# =============================================================================


class SessionLockError(TransientError):
    """Session on a machine could not be acquired.

    Raised after the bounded lock attempts are exhausted, or immediately
    when the remote refuses the lock for a reason other than a race.
    No partial state change is assumed.

    Attributes:
        fault_text: Remote fault text of the last failed attempt ("" if none)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, fault_text: str = ""):
        super().__init__(message, context)
        self.fault_text = fault_text


class ControlConnectionError(TransientError):
    """Cannot reach or authenticate to the control endpoint.

    The registry drops the host's cached adapter, so the next call
    reconnects.
    """


class OperationTimeoutError(TransientError):
    """Waiting for a remote action or stable state exceeded its budget.

    The remote action may still be running: nothing was cancelled on the
    remote side.

    Attributes:
        result_code: Always TIMED_OUT_RESULT_CODE
    """

    result_code: int = TIMED_OUT_RESULT_CODE


# =============================================================================
# Permanent Errors
# =============================================================================


class NotFoundError(PermanentError):
    """A named remote entity does not exist."""


class MachineNotFoundError(NotFoundError):
    """Machine absent on the host. Not retried."""


class SnapshotNotFoundError(NotFoundError):
    """Requested snapshot does not exist on the machine."""


class UnknownHostError(NotFoundError):
    """No host is registered under the requested host id."""


class OperationFailedError(PermanentError):
    """A remote asynchronous action completed with a non-zero result.

    Attributes:
        result_code: Remote result code
        error_text: Chained remote error text, newline separated
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        result_code: int,
        error_text: str = "",
    ):
        ctx = context or {}
        ctx.update({"result_code": result_code, "error_text": error_text})
        super().__init__(message, ctx)
        self.result_code = result_code
        self.error_text = error_text


class UnsupportedVersionError(PermanentError):
    """The host reports a control API revision no adapter implements.

    Attributes:
        version: Version string reported by the host
    """

    def __init__(self, message: str, version: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["version"] = version
        super().__init__(message, ctx)
        self.version = version
