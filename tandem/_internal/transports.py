"""
Transport adapters.

The core only defines packet shapes; moving bytes is up to the embedding
application. ``LoopbackTransport`` connects client runtimes to a host in the
same process, which is what the tests and the example app use.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..host import ComponentHost
    from .envelope import RequestMetadata

logger = logging.getLogger(__name__)


class LoopbackTransport:
    """In-process transport. Acts as the host's push channel as well.

    Usage::

        transport = LoopbackTransport()
        host = ComponentHost(registry, push_channel=transport)
        transport.attach(host)
        client = ClientRuntime(registry, transport, "session-1")
    """

    def __init__(self, host: ComponentHost | None = None) -> None:
        self.host = host
        self._push_handlers: dict[str, Callable[[bytes], Any]] = {}
        self.sent: list[tuple[str, bytes]] = []

    def attach(self, host: ComponentHost) -> None:
        self.host = host

    def _require_host(self) -> ComponentHost:
        if self.host is None:
            raise RuntimeError("LoopbackTransport is not attached to a ComponentHost")
        return self.host

    async def send(self, session_id: str, raw: bytes, metadata: RequestMetadata) -> bytes:
        self.sent.append((session_id, raw))
        return await self._require_host().deliver(session_id, raw, metadata)

    async def bootstrap(self, session_id: str, requested: list[str]) -> bytes:
        return await self._require_host().bootstrap(session_id, requested)

    def set_push_handler(self, session_id: str, handler: Callable[[bytes], Any]) -> None:
        self._push_handlers[session_id] = handler

    async def push(self, session_id: str, raw: bytes) -> None:
        handler = self._push_handlers.get(session_id)
        if handler is None:
            logger.warning("No client listening for pushes to session %s", session_id)
            return
        # Handlers only enqueue; awaiting their work here could block the host queue.
        handler(raw)
