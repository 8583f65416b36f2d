"""
tandem - Session-scoped components that live on both sides of a host/client boundary.

A component is declared once with a host bundle, a client bundle and an
optional shared base. Every session gets its own instances on each side, and
each instance can call the methods its peer exposes through a proxy. Calls are
batched into packets and executed in a strict per-session order.

Key Features:
    - Exposed-method registry with typed peer proxies
    - Per-session ordered execution of requests
    - Lazy installation of feature components with include resolution
    - Identity-token and protocol-version checks on every request
    - Session resynchronization after a host restart

Basic Usage:
    >>> import asyncio
    >>> import tandem
    >>> class CounterHost(tandem.HostEndpoint):
    ...     def setup(self):
    ...         self.value = 0
    ...     @tandem.exposed
    ...     def increment(self, step):
    ...         self.value += step
    ...         return self.value
    >>> registry = tandem.ComponentRegistry()
    >>> _ = registry.component("Counter", host=CounterHost, client=tandem.ClientEndpoint)
    >>> async def main():
    ...     transport = tandem.LoopbackTransport()
    ...     host = tandem.ComponentHost(registry, push_channel=transport)
    ...     transport.attach(host)
    ...     client = tandem.ClientRuntime(registry, transport, "session-1")
    ...     await client.bootstrap(["Counter"])
    ...     return await client.instances.Counter.host.increment(2)
    >>> asyncio.run(main())
    2
"""

from . import errors
from ._internal.client import ClientRuntime
from ._internal.definitions import ComponentDefinition, ComponentRegistry, exposed
from ._internal.session import InMemorySessionStore
from ._internal.transports import LoopbackTransport
from ._internal.wire_serialization import SerializerRegistry
from .config import ClientConfig, HostConfig, TraceConfig
from .errors import PeerError
from .host import ComponentHost
from .shared import ClientEndpoint, HostEndpoint, SharedEndpoint

__version__ = "0.1.0"

__all__ = [
    "ComponentHost",
    "ComponentRegistry",
    "ComponentDefinition",
    "exposed",
    "SharedEndpoint",
    "HostEndpoint",
    "ClientEndpoint",
    "ClientRuntime",
    "LoopbackTransport",
    "InMemorySessionStore",
    "SerializerRegistry",
    "HostConfig",
    "ClientConfig",
    "TraceConfig",
    "PeerError",
    "errors",
]
