"""Constants for vbox-control configuration and limits."""

from typing import Final

from vbox_control.models import DisplayType, StopMode

# ============================================================================
# Polling
# ============================================================================

STATE_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Delay between machine-state reads while the machine is in a transient state."""

PROGRESS_POLL_INTERVAL_SECONDS: Final[float] = 0.25
"""Delay between IProgress completion checks."""

SESSION_POLL_INTERVAL_SECONDS: Final[float] = 0.5
"""Delay between session-state reads while a session is Spawning/Unlocking."""

# ============================================================================
# Timeouts
# ============================================================================

COMPLETION_TIMEOUT_SECONDS: Final[float] = 60.0
"""Budget for one remote asynchronous action (power down, restore, launch, save)."""

OPERATION_TIMEOUT_SECONDS: Final[float] = 600.0
"""Overall deadline for one Start/Stop, covering every wait inside it."""

SESSION_SETTLE_TIMEOUT_SECONDS: Final[float] = 30.0
"""Budget for a session to leave Spawning/Unlocking."""

# ============================================================================
# Session locking
# ============================================================================

LOCK_MAX_ATTEMPTS: Final[int] = 4
"""lockMachine attempts before giving up on an "already locked" race."""

LOCK_RETRY_DELAY_SECONDS: Final[float] = 0.5
"""Spacing between lockMachine attempts."""

RELEASE_MAX_ATTEMPTS: Final[int] = 4
"""unlockMachine attempts before release gives up (and logs)."""

ALREADY_LOCKED_MARKER: Final[str] = "is already locked for a session"
"""Fault text fragment identifying a lock race rather than a real conflict."""

# ============================================================================
# Lifecycle defaults
# ============================================================================

DEFAULT_DISPLAY_TYPE: Final[DisplayType] = DisplayType.HEADLESS
DEFAULT_STOP_MODE: Final[StopMode] = StopMode.PAUSE_AND_SAVE

DEFAULT_STARTUP_WAIT_SECONDS: Final[int] = 30
"""Grace period after a start before the guest is considered usable."""

PRIMARY_NETWORK_SLOT: Final[int] = 0
"""Network adapter slot whose MAC address identifies the machine."""
