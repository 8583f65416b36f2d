"""Host-side ComponentHost for tandem.

Owns the component registry, the session store and every session's ordered
queue. A transport integration calls :meth:`ComponentHost.bootstrap` when a
new client connects and :meth:`ComponentHost.deliver` for each request packet.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from ._internal.bootstrap import Bootstrapper, InstallPayload
from ._internal.builtin_libs import install_builtin_libraries
from ._internal.command_proxy import execute_commands
from ._internal.definitions import ComponentRegistry
from ._internal.envelope import (
    RequestMetadata,
    error_packet,
    refresh_packet,
    verify_identity,
    verify_version,
)
from ._internal.packet import Command, decode_packet, encode_packet
from ._internal.session import InMemorySessionStore, Session, SessionRegistry
from ._internal.tools import Tools
from .config import HostConfig, resolve_host_config
from .errors import (
    IdentityMismatchError,
    MalformedPacketError,
    SessionInitError,
    TooManyCommandsError,
    UnknownComponentError,
    VersionMismatchError,
)
from .interfaces import PushChannel, SessionStore

__all__ = ["ComponentHost", "HostConfig"]

logger = logging.getLogger(__name__)


class ComponentHost:
    """Host for component sessions."""

    def __init__(
        self,
        registry: ComponentRegistry,
        config: HostConfig | None = None,
        *,
        store: SessionStore | None = None,
        push_channel: PushChannel | None = None,
    ) -> None:
        """Initialize the ComponentHost.

        Args:
            registry: Component definitions. The built-in libraries are added
                if missing.
            config: Host configuration; missing keys use defaults.
            store: Session store. Defaults to an in-memory LRU store honoring
                ``max_sessions`` and ``session_idle_timeout``.
            push_channel: Channel used by ``Tools.push_now``.
        """
        self.config = resolve_host_config(config)
        install_builtin_libraries(registry)
        self.registry = registry
        self.shared_context: dict[str, Any] = {}
        self.push_channel = push_channel
        self.store: SessionStore = store if store is not None else InMemorySessionStore(
            max_sessions=self.config["max_sessions"],
            idle_timeout=self.config["session_idle_timeout"],
        )
        self.sessions = SessionRegistry(
            registry, self.store, self.config, self.shared_context, self._create_tools)
        self.bootstrapper = Bootstrapper(registry, self.sessions, self.config)
        self._started = False

    @property
    def version(self) -> str:
        return self.config["protocol_version"]

    def _create_tools(self, session: Session) -> Tools:
        return Tools(session, self.bootstrapper, self.config["trace"], self.push_channel)

    def start(self) -> None:
        """Validate the registry and run every component's ``init_host`` once."""
        if self._started:
            return
        self.registry.validate()
        for definition in self.registry:
            definition.host_instance_class.init_host(self.shared_context, self.config)
        self._started = True
        logger.info(
            "ComponentHost started with %d components (version %s)", len(self.registry), self.version)

    # -- transport entry points ------------------------------------------------

    async def bootstrap(self, session_id: str, requested: Iterable[str] = ()) -> bytes:
        """Return the JSON install payload for a new or reloaded client.

        Raises:
            UnknownComponentError: A requested component is not registered.
            ComponentGateError: A requested component's gate rejected it.
            SessionInitError: A lifecycle hook failed.
        """
        self.start()
        payload = await self.bootstrap_payload(session_id, requested)
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    async def bootstrap_payload(self, session_id: str, requested: Iterable[str] = ()) -> InstallPayload:
        self.start()
        return await self.bootstrapper.bootstrap(session_id, requested)

    async def deliver(
        self, session_id: str, raw_request: bytes | str, metadata: RequestMetadata | None = None
    ) -> bytes:
        """Execute one request packet for *session_id* and return the response packet.

        Envelope failures never raise: they produce a refresh packet (version
        mismatch, unknown session) or a packet with one synthetic error result
        (malformed payload, identity mismatch, too many commands).
        """
        self.start()
        metadata = metadata or {}

        try:
            packet = decode_packet(raw_request)
        except MalformedPacketError as exc:
            logger.warning("[%s] Malformed request: %s", session_id, exc)
            return encode_packet(error_packet(exc.marker))

        try:
            verify_version(metadata, self.version)
        except VersionMismatchError as exc:
            logger.info("[%s] %s, asking client to refresh", session_id, exc)
            return encode_packet(refresh_packet())

        session = self.sessions.get(session_id)
        if session is None:
            installed = metadata.get("installedComponents")
            if installed is None:
                logger.info("[%s] Unknown session, asking client to refresh", session_id)
                return encode_packet(refresh_packet())
            try:
                session = await self.bootstrapper.resync(session_id, list(installed))
            except (SessionInitError, UnknownComponentError) as exc:
                logger.warning("[%s] Resync failed (%s), asking client to refresh", session_id, exc)
                return encode_packet(refresh_packet())
        else:
            try:
                verify_identity(session, metadata)
            except IdentityMismatchError as exc:
                logger.warning("[%s] %s", session_id, exc)
                return encode_packet(error_packet(exc.marker))

        commands = packet["commands"]
        limit = self.config["max_commands_per_request"]
        if limit and len(commands) > limit:
            exc = TooManyCommandsError(len(commands), limit)
            logger.error("[%s] %s", session_id, exc)
            return encode_packet(error_packet(exc.marker))

        session.touch()
        return await session.queue.run_ordered(lambda: self._process(session, commands))

    async def _process(self, session: Session, commands: list[Command]) -> bytes:
        results = await execute_commands(session.instances, commands, session.tools)
        await session.wait_flushed()
        return encode_packet(session.compile(results))

    # -- session management ----------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    async def destroy_session(self, session_id: str) -> bool:
        return await self.sessions.destroy(session_id)

    async def evict_idle_sessions(self, now: float | None = None) -> list[str]:
        return await self.sessions.evict_idle(now)

    async def shutdown(self) -> None:
        """Destroy every session."""
        for session in list(self.store):
            try:
                await self.sessions.destroy(session.session_id)
            except Exception as e:
                logger.error(f"Error destroying session '{session.session_id}': {e}")

    def describe_commands(self) -> dict[str, dict[str, list[str]]]:
        """Exposed command names per component and side."""
        return {
            definition.name: {
                "host": sorted(definition.host_commands),
                "client": sorted(definition.client_commands),
            }
            for definition in self.registry
        }
