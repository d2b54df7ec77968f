"""Web-service transport contract.

The VirtualBox web service (vboxwebsrv) exposes the Main API as SOAP
operations named ``<Interface>_<method>`` that take and return managed
object references (opaque strings). vbox-control does not speak SOAP
itself; adapters call operations through a transport that does.

A transport implementation must:
    - raise RemoteFault(fault_text) when the service answers with a fault
    - raise ControlConnectionError when the endpoint cannot be reached
    - make close() idempotent

Transports are created per connection by a factory taking the endpoint URL.
"""

from __future__ import annotations

import pkgutil
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from vbox_control.exceptions import ControlConnectionError


@runtime_checkable
class WebServiceTransport(Protocol):
    """Call channel to one web-service endpoint."""

    async def invoke(self, method: str, /, **params: Any) -> Any:
        """Call ``method`` (e.g. "IMachine_getState") with keyword parameters."""
        ...

    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        ...


TransportFactory = Callable[[str], WebServiceTransport]
"""Creates a transport for an endpoint URL."""


def load_transport_factory(path: str) -> TransportFactory:
    """Resolve a transport factory from a ``module:attribute`` path.

    Raises:
        ControlConnectionError: The path does not resolve to a callable.
    """
    try:
        factory = pkgutil.resolve_name(path)
    except (ImportError, AttributeError, ValueError) as e:
        raise ControlConnectionError(f"Cannot load transport factory {path!r}: {e}", {"transport": path}) from e
    if not callable(factory):
        raise ControlConnectionError(f"Transport factory {path!r} is not callable", {"transport": path})
    return factory  # type: ignore[no-any-return]
