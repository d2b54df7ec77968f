"""Host and lifecycle configuration for vbox-control.

HostConfig describes one VirtualBox web-service endpoint; LifecycleConfig
tunes the polling, retry and timeout behaviour of lifecycle operations.

Example:
    ```python
    from vbox_control import ControlService, HostConfig, LifecycleConfig

    host = HostConfig(
        host_id="lab",
        url="http://vbox-lab:18083",
        username="builder",
        password="s3cret",
    )
    config = LifecycleConfig(completion_timeout=120.0)
    async with ControlService([host], transport_factory, config) as service:
        result = await service.start(MachineRef(host_id="lab", name="win10"))
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from vbox_control import constants


class HostConfig(BaseModel):
    """Connection details for one VirtualBox host.

    The password is held as a SecretStr: it is only revealed at the point
    of logging on, and never appears in repr() or logs.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    host_id: str = Field(min_length=1, description="Identifier machines refer to")
    url: str = Field(min_length=1, description="Web service endpoint, e.g. http://host:18083")
    username: str = Field(default="", description="Web service user")
    password: SecretStr = Field(default=SecretStr(""), description="Web service password")


class LifecycleConfig(BaseModel):
    """Polling, retry and timeout knobs for lifecycle operations.

    Attributes:
        state_poll_interval: Seconds between machine-state reads while transient.
        progress_poll_interval: Seconds between remote-action completion checks.
        completion_timeout: Seconds allowed for one remote action. Default: 60.
        operation_timeout: Overall deadline for one Start/Stop. Default: 600.
        lock_max_attempts: lockMachine attempts on "already locked" races. Default: 4.
        lock_retry_delay: Seconds between lock attempts. Default: 0.5.
        session_poll_interval: Seconds between session-state reads while transient.
        session_settle_timeout: Seconds allowed for a session to leave Spawning/Unlocking.
        release_max_attempts: unlockMachine attempts during release. Default: 4.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    state_poll_interval: float = Field(default=constants.STATE_POLL_INTERVAL_SECONDS, ge=0)
    progress_poll_interval: float = Field(default=constants.PROGRESS_POLL_INTERVAL_SECONDS, gt=0)
    completion_timeout: float = Field(default=constants.COMPLETION_TIMEOUT_SECONDS, gt=0)
    operation_timeout: float = Field(default=constants.OPERATION_TIMEOUT_SECONDS, gt=0)
    lock_max_attempts: int = Field(default=constants.LOCK_MAX_ATTEMPTS, ge=1, le=100)
    lock_retry_delay: float = Field(default=constants.LOCK_RETRY_DELAY_SECONDS, ge=0)
    session_poll_interval: float = Field(default=constants.SESSION_POLL_INTERVAL_SECONDS, ge=0)
    session_settle_timeout: float = Field(default=constants.SESSION_SETTLE_TIMEOUT_SECONDS, gt=0)
    release_max_attempts: int = Field(default=constants.RELEASE_MAX_ATTEMPTS, ge=1, le=100)
