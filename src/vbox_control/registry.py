"""Connection registry: one live ControlAdapter per host.

Lifecycle:
    - An adapter is created on the first resolve() for a host, after a
      version probe picks the adapter revision.
    - Every resolve() re-checks liveness. A dead adapter (remote restart,
      network partition) is disconnected and replaced, never reused.
    - invalidate() drops a failed adapter so the next resolve() reconnects.
    - close() disconnects every adapter; call it at process shutdown
      (or use the registry as an async context manager).

Policy: adapters are cached for the registry's lifetime and verified on
each resolve. There is no per-operation connect/disconnect mode.

The adapter map is guarded by its own asyncio.Lock, independent of the
per-machine serializer. Network I/O for a host (liveness check, version
probe, logon) runs under that host's lock only, so a slow host never
holds up resolves for the others.
"""

from __future__ import annotations

import asyncio
import types
from collections.abc import Iterable
from typing import Self

from vbox_control import constants
from vbox_control._logging import get_logger
from vbox_control.config import HostConfig
from vbox_control.control import ControlAdapter, adapter_for_version
from vbox_control.exceptions import ControlConnectionError, RemoteFault, UnknownHostError
from vbox_control.transport import TransportFactory

logger = get_logger(__name__)


class ConnectionRegistry:
    """Caches and validates one ControlAdapter per registered host."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        hosts: Iterable[HostConfig] = (),
        *,
        progress_poll_interval: float = constants.PROGRESS_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._transport_factory = transport_factory
        self._progress_poll_interval = progress_poll_interval
        self._hosts: dict[str, HostConfig] = {host.host_id: host for host in hosts}
        self._adapters: dict[str, ControlAdapter] = {}
        self._host_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()  # Protects _adapters and _host_locks

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Hosts
    # -------------------------------------------------------------------------

    def add_host(self, host: HostConfig) -> None:
        """Register (or replace) a host. A replaced host's adapter is dropped on next resolve."""
        previous = self._hosts.get(host.host_id)
        self._hosts[host.host_id] = host
        if previous is not None and previous != host:
            logger.info("Host configuration replaced", extra={"host_id": host.host_id})

    def host(self, host_id: str) -> HostConfig:
        try:
            return self._hosts[host_id]
        except KeyError:
            raise UnknownHostError(f"No VirtualBox host registered as {host_id!r}", {"host_id": host_id}) from None

    @property
    def host_ids(self) -> list[str]:
        return list(self._hosts)

    # -------------------------------------------------------------------------
    # Adapters
    # -------------------------------------------------------------------------

    async def resolve(self, host_id: str) -> ControlAdapter:
        """Return a verified-live adapter for the host, connecting if needed.

        Raises:
            UnknownHostError: host_id not registered.
            ControlConnectionError: Host unreachable or logon refused.
            UnsupportedVersionError: Host runs an API revision with no adapter.
        """
        host = self.host(host_id)
        async with await self._host_lock(host_id):
            async with self._lock:
                adapter = self._adapters.get(host_id)
            if adapter is not None:
                if adapter.host == host and await adapter.is_connected():
                    return adapter
                logger.info("Lost connection, reconnecting", extra={"host_id": host_id, "url": host.url})
                await self._drop(host_id, adapter)

            adapter = await self._create(host)
            async with self._lock:
                self._adapters[host_id] = adapter
            return adapter

    async def invalidate(self, host_id: str, adapter: ControlAdapter | None = None) -> None:
        """Drop the host's cached adapter; the next resolve() reconnects.

        With ``adapter`` given, only that adapter is dropped, and only if it
        fails a liveness check: other operations may still be using it, and
        a newer adapter for the host stays in place.
        """
        if adapter is not None and await adapter.is_connected():
            logger.info("Adapter still connected, keeping it", extra={"host_id": host_id})
            return
        async with self._lock:
            cached = self._adapters.get(host_id)
            if cached is None or (adapter is not None and cached is not adapter):
                return
            del self._adapters[host_id]
        logger.info("Adapter invalidated", extra={"host_id": host_id})
        await cached.disconnect()

    async def _host_lock(self, host_id: str) -> asyncio.Lock:
        async with self._lock:
            if host_id not in self._host_locks:
                self._host_locks[host_id] = asyncio.Lock()
            return self._host_locks[host_id]

    async def _drop(self, host_id: str, adapter: ControlAdapter) -> None:
        async with self._lock:
            if self._adapters.get(host_id) is adapter:
                del self._adapters[host_id]
        await adapter.disconnect()

    async def close(self) -> None:
        """Disconnect every cached adapter."""
        async with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            await adapter.disconnect()

    async def probe_version(self, host: HostConfig) -> str:
        """Log on with a throwaway transport, read the version, log off."""
        transport = self._transport_factory(host.url)
        try:
            try:
                vbox = await transport.invoke(
                    "IWebsessionManager_logon",
                    username=host.username,
                    password=host.password.get_secret_value(),
                )
                version = str(await transport.invoke("IVirtualBox_getVersion", _this=vbox))
                await transport.invoke("IWebsessionManager_logoff", refIVirtualBox=vbox)
            except RemoteFault as e:
                raise ControlConnectionError(
                    f"Cannot query version of {host.url}: {e.fault_text}",
                    {"host_id": host.host_id, "url": host.url},
                ) from e
        finally:
            await transport.close()
        return version

    async def _create(self, host: HostConfig) -> ControlAdapter:
        logger.info("Trying to connect", extra={"host_id": host.host_id, "url": host.url, "username": host.username})
        version = await self.probe_version(host)
        adapter_cls = adapter_for_version(version)
        logger.info(
            "Creating connection",
            extra={"host_id": host.host_id, "version": version, "adapter": adapter_cls.__name__},
        )
        adapter = adapter_cls(
            host,
            self._transport_factory(host.url),
            progress_poll_interval=self._progress_poll_interval,
        )
        try:
            await adapter.connect()
        except BaseException:
            await adapter.disconnect()
            raise
        return adapter
