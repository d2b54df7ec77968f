"""SessionCoordinator - exclusive sessions on a machine, acquired through races.

Locking is the most fault-prone step of a lifecycle operation: the remote
lock state changes asynchronously, so "already locked for a session" is
usually a race with a release still in flight rather than a real conflict.

Acquire:
    1. lockMachine; on an "already locked" fault retry (bounded, fixed delay)
    2. wait out Spawning/Unlocking on the session, then require Locked
    3. wait out Spawning/Unlocking on the machine's session state

Release (never raises -- runs in cleanup paths):
    1. wait out transient session/machine states (unlock anyway on timeout)
    2. unlockMachine, re-checking the session state (bounded attempts)
    3. wait out transient states again

Example:
    ```python
    coordinator = SessionCoordinator.from_config(adapter, config)
    async with coordinator.hold("win10", LockKind.SHARED) as session:
        progress = await adapter.power_down(session)
    ```
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Self

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from vbox_control import constants
from vbox_control._logging import get_logger
from vbox_control.exceptions import SessionLockError, VBoxControlError
from vbox_control.models import LockKind, Session, SessionState

if TYPE_CHECKING:
    from vbox_control.config import LifecycleConfig
    from vbox_control.control import ControlAdapter

logger = get_logger(__name__)


class _LockRace(Exception):
    """Internal retry marker: the lock attempt lost a race and may be retried."""

    def __init__(self, fault_text: str) -> None:
        super().__init__(fault_text)
        self.fault_text = fault_text


def _last_result(retry_state: RetryCallState) -> SessionState:
    """Return the final unlock state instead of raising RetryError."""
    assert retry_state.outcome is not None  # noqa: S101 - set by tenacity before callback
    return retry_state.outcome.result()  # type: ignore[no-any-return]


class SessionCoordinator:
    """Acquires and releases sessions on one host's machines.

    Attributes:
        adapter: ControlAdapter the sessions are opened through.
    """

    def __init__(
        self,
        adapter: ControlAdapter,
        *,
        max_attempts: int = constants.LOCK_MAX_ATTEMPTS,
        retry_delay: float = constants.LOCK_RETRY_DELAY_SECONDS,
        poll_interval: float = constants.SESSION_POLL_INTERVAL_SECONDS,
        settle_timeout: float = constants.SESSION_SETTLE_TIMEOUT_SECONDS,
        release_attempts: int = constants.RELEASE_MAX_ATTEMPTS,
        log: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ) -> None:
        self.adapter = adapter
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._settle_timeout = settle_timeout
        self._release_attempts = release_attempts
        self._log = log if log is not None else logger

    @classmethod
    def from_config(
        cls,
        adapter: ControlAdapter,
        config: LifecycleConfig,
        log: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ) -> Self:
        return cls(
            adapter,
            max_attempts=config.lock_max_attempts,
            retry_delay=config.lock_retry_delay,
            poll_interval=config.session_poll_interval,
            settle_timeout=config.session_settle_timeout,
            release_attempts=config.release_max_attempts,
            log=log,
        )

    # -------------------------------------------------------------------------
    # Scoped acquisition
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, machine_name: str, lock_kind: LockKind) -> AsyncIterator[Session]:
        """Acquire a session, yield it, and release it on every exit path.

        Release also runs on failure and on task cancellation.
        """
        session = await self.acquire(machine_name, lock_kind)
        try:
            yield session
        finally:
            await self.release(session)

    # -------------------------------------------------------------------------
    # Acquire
    # -------------------------------------------------------------------------

    async def acquire(
        self,
        machine_name: str,
        lock_kind: LockKind,
        *,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> Session:
        """Lock a session on the machine, retrying through "already locked" races.

        Args:
            machine_name: Machine to lock.
            lock_kind: SHARED/WRITE lock the machine; LAUNCH returns an
                unlocked session for launchVMProcess.
            max_attempts: Overrides the configured attempt count.
            retry_delay: Overrides the configured delay between attempts.

        Raises:
            SessionLockError: Attempts exhausted, a non-race lock fault, or
                the session never left a transient state.
        """
        attempts = max_attempts if max_attempts is not None else self._max_attempts
        delay = retry_delay if retry_delay is not None else self._retry_delay
        self._log.info("Getting %s session for machine %s", lock_kind.value, machine_name)

        session: Session | None = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(delay),
                retry=retry_if_exception_type(_LockRace),
                before_sleep=before_sleep_log(self._log, logging.INFO),
                reraise=True,
            ):
                with attempt:
                    session = await self._lock_once(machine_name, lock_kind)
        except _LockRace as e:
            raise SessionLockError(
                f"Machine {machine_name!r} still locked for a session after {attempts} attempts",
                {"machine": machine_name, "lock_kind": lock_kind.value, "attempts": attempts},
                fault_text=e.fault_text,
            ) from e

        assert session is not None  # noqa: S101 - loop only exits normally on success
        self._log.info("Session OK for machine %s", machine_name)
        return session

    async def _lock_once(self, machine_name: str, lock_kind: LockKind) -> Session:
        try:
            session = await self.adapter.acquire_session(machine_name, lock_kind)
        except SessionLockError as e:
            if constants.ALREADY_LOCKED_MARKER in e.fault_text:
                self._log.info("Machine %s is already locked for a session", machine_name)
                raise _LockRace(e.fault_text) from e
            raise

        if lock_kind is LockKind.LAUNCH:
            await self._settle(machine_name, "session", lambda: self.adapter.session_state(session))
            return session

        try:
            (state,) = await self._settle(machine_name, "session", lambda: self.adapter.session_state(session))
            if state is not SessionState.LOCKED:
                raise _LockRace(f"session in state {state.value} after lockMachine")
            await self._settle(
                machine_name, "machine session", lambda: self.adapter.machine_session_state(machine_name)
            )
        except (VBoxControlError, _LockRace):
            await self.release(session)
            raise
        return session

    async def _settle(
        self,
        machine_name: str,
        what: str,
        *reads: Callable[[], Awaitable[SessionState]],
    ) -> list[SessionState]:
        """Poll until none of the read states is Spawning/Unlocking.

        Raises:
            SessionLockError: Still transient after the settle timeout.
        """
        try:
            async with asyncio.timeout(self._settle_timeout):
                while True:
                    states = [await read() for read in reads]
                    if not any(state.is_transient for state in states):
                        return states
                    self._log.debug(
                        "Waiting for %s transient states of machine %s: %s",
                        what,
                        machine_name,
                        ", ".join(state.value for state in states),
                    )
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError as e:
            raise SessionLockError(
                f"{what.capitalize()} of machine {machine_name!r} stuck in a transient state",
                {"machine": machine_name, "settle_timeout": self._settle_timeout},
            ) from e

    # -------------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------------

    async def release(self, session: Session) -> None:
        """Unlock the session. Never raises: failures are logged.

        Release runs in cleanup paths, so raising would mask the error that
        caused the cleanup.
        """
        machine_name = session.machine_name

        def session_state() -> Awaitable[SessionState]:
            return self.adapter.session_state(session)

        def machine_state() -> Awaitable[SessionState]:
            return self.adapter.machine_session_state(machine_name)

        try:
            try:
                (state, _) = await self._settle(machine_name, "session", session_state, machine_state)
            except SessionLockError:
                self._log.warning("Session for machine %s did not settle, unlocking anyway", machine_name)
            else:
                if state in (SessionState.UNLOCKED, SessionState.NULL):
                    self._log.debug("Session for machine %s not locked, nothing to release", machine_name)
                    return

            state = await AsyncRetrying(
                stop=stop_after_attempt(self._release_attempts),
                wait=wait_fixed(self._retry_delay),
                retry=retry_if_result(lambda s: s is not SessionState.UNLOCKED),
                retry_error_callback=_last_result,
            )(self._unlock_once, session)
            if state is not SessionState.UNLOCKED:
                self._log.warning(
                    "Session for machine %s still %s after %d unlock attempts",
                    machine_name,
                    state.value,
                    self._release_attempts,
                )

            await self._settle(machine_name, "session", session_state, machine_state)
            self._log.info("Session released for machine %s", machine_name)
        except Exception:
            self._log.error("Exception while releasing session for machine %s", machine_name, exc_info=True)

    async def _unlock_once(self, session: Session) -> SessionState:
        self._log.info("Unlocking machine %s", session.machine_name)
        await self.adapter.release_session(session)
        return await self.adapter.session_state(session)
