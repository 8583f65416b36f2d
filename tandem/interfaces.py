"""Public collaborator protocols for tandem.

These interfaces define the contract between the tandem core and the code
that embeds it: where sessions are stored, how packets travel, and how the
host pushes packets outside a request/response exchange. Structural typing
lets integrations implement them without inheriting from concrete classes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ._internal.envelope import RequestMetadata
    from ._internal.session import Session


@runtime_checkable
class SessionStore(Protocol):
    """Keyed storage of host sessions.

    The default implementation is
    :class:`~tandem._internal.session.InMemorySessionStore`.
    """

    def get(self, session_id: str) -> Session | None:
        """Return the session for *session_id* and mark it as recently used."""

    def put(self, session: Session) -> list[Session]:
        """Store *session*; return any sessions evicted to make room."""

    def remove(self, session_id: str) -> Session | None:
        """Remove and return the session, or None if unknown."""

    def evict_idle(self, now: float | None = None) -> list[Session]:
        """Remove and return sessions that have been idle too long."""

    def __contains__(self, session_id: object) -> bool: ...

    def __len__(self) -> int: ...

    def __iter__(self) -> Iterator[Session]: ...


@runtime_checkable
class Transport(Protocol):
    """Client-side view of the byte transport to a host."""

    async def send(self, session_id: str, raw: bytes, metadata: RequestMetadata) -> bytes:
        """Deliver one request packet and return the raw response packet."""

    async def bootstrap(self, session_id: str, requested: list[str]) -> bytes:
        """Request the install payload for *session_id*."""


@runtime_checkable
class PushChannel(Protocol):
    """Host-side channel for packets sent outside a request/response exchange.

    Used by ``Tools.push_now`` on transports that keep a connection open.
    """

    async def push(self, session_id: str, raw: bytes) -> None:
        """Send a packet without results to the client of *session_id*."""


@runtime_checkable
class PushReceiver(Protocol):
    """Client-side consumer of pushed packets."""

    def set_push_handler(self, session_id: str, handler: Callable[[bytes], Any]) -> None:
        """Route packets pushed to *session_id* into *handler*."""
