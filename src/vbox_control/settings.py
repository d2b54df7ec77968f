"""Runtime configuration from environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from vbox_control import constants
from vbox_control.config import LifecycleConfig


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VBOX_CONTROL_ prefix.
    Example: VBOX_CONTROL_COMPLETION_TIMEOUT=120
    """

    model_config = SettingsConfigDict(
        env_prefix="VBOX_CONTROL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Polling
    state_poll_interval: float = constants.STATE_POLL_INTERVAL_SECONDS
    progress_poll_interval: float = constants.PROGRESS_POLL_INTERVAL_SECONDS
    session_poll_interval: float = constants.SESSION_POLL_INTERVAL_SECONDS

    # Timeouts
    completion_timeout: float = constants.COMPLETION_TIMEOUT_SECONDS
    operation_timeout: float = constants.OPERATION_TIMEOUT_SECONDS
    session_settle_timeout: float = constants.SESSION_SETTLE_TIMEOUT_SECONDS

    # Session locking
    lock_max_attempts: int = constants.LOCK_MAX_ATTEMPTS
    lock_retry_delay: float = constants.LOCK_RETRY_DELAY_SECONDS
    release_max_attempts: int = constants.RELEASE_MAX_ATTEMPTS

    # Transport factory as "module:attribute" (used by the CLI)
    transport: str | None = None

    def lifecycle_config(self) -> LifecycleConfig:
        """Validated LifecycleConfig built from these settings."""
        return LifecycleConfig(
            state_poll_interval=self.state_poll_interval,
            progress_poll_interval=self.progress_poll_interval,
            completion_timeout=self.completion_timeout,
            operation_timeout=self.operation_timeout,
            lock_max_attempts=self.lock_max_attempts,
            lock_retry_delay=self.lock_retry_delay,
            session_poll_interval=self.session_poll_interval,
            session_settle_timeout=self.session_settle_timeout,
            release_max_attempts=self.release_max_attempts,
        )
