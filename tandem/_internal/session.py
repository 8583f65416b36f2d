"""
Session state & Session Instance Registry.

This module contains:
- InstanceMap / SessionContext (per-session containers handed to components)
- Session (one entry per remote endpoint)
- InMemorySessionStore (LRU store with idle eviction)
- SessionRegistry (creation, component instantiation and teardown)
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import RemoteCommandError, SessionInitError
from .command_proxy import REPLY_TIMEOUT, PeerProxy
from .envelope import new_identity_token
from .ordered_queue import OrderedExecutionQueue
from .packet import Command, CommandResult, Packet, PacketBuffer, make_command
from .wire_serialization import prepare_for_wire

if TYPE_CHECKING:
    from ..config import HostConfig
    from ..interfaces import SessionStore
    from ..shared import HostEndpoint, SharedEndpoint
    from .definitions import ComponentDefinition, ComponentRegistry
    from .tools import Tools

logger = logging.getLogger(__name__)


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Per-session containers
# ---------------------------------------------------------------------------

class InstanceMap:
    """Component instances of one session, split into libraries and features.

    Instances are reachable by name through ``get``, item access or attribute
    access (``instances.Chat``).
    """

    def __init__(self) -> None:
        self.libs: dict[str, SharedEndpoint] = {}
        self.features: dict[str, SharedEndpoint] = {}

    def add(self, definition: ComponentDefinition, instance: SharedEndpoint) -> None:
        target = self.libs if definition.library else self.features
        target[definition.name] = instance

    def remove(self, name: str) -> SharedEndpoint | None:
        if name in self.libs:
            return self.libs.pop(name)
        return self.features.pop(name, None)

    def get(self, name: str) -> Any:
        instance = self.libs.get(name)
        if instance is None:
            instance = self.features.get(name)
        return instance

    def names(self) -> list[str]:
        return [*self.libs, *self.features]

    def __getitem__(self, name: str) -> Any:
        instance = self.get(name)
        if instance is None:
            raise KeyError(name)
        return instance

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name in ("libs", "features"):
            raise AttributeError(name)
        instance = self.get(name)
        if instance is None:
            raise AttributeError(f"No component instance named {name!r}")
        return instance

    def __contains__(self, name: object) -> bool:
        return name in self.libs or name in self.features

    def __iter__(self) -> Iterator[Any]:
        yield from self.libs.values()
        yield from self.features.values()

    def __len__(self) -> int:
        return len(self.libs) + len(self.features)


class SessionContext:
    """Data shared by every component of one session on one side."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.data: dict[str, Any] = {}
        self.principal: Any = None

    def __repr__(self) -> str:
        return f"<SessionContext {self.session_id}>"


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    INSTALLING = "installing"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session:
    """Host-side state of one remote endpoint."""

    tools: Tools

    def __init__(
        self, session_id: str, task_timeout: float | None = None, reply_timeout: float | None = None
    ) -> None:
        self.session_id = session_id
        self.reply_timeout = reply_timeout
        self.instances = InstanceMap()
        self.queue = OrderedExecutionQueue(session_id, task_timeout)
        self.buffer = PacketBuffer()
        self.context = SessionContext(session_id)
        self.identity_token = new_identity_token()
        self.state = SessionState.UNINITIALIZED
        self.last_used = time.monotonic()
        self._reply_ids = itertools.count(1)
        self._pending_replies: dict[int, tuple[str, str, asyncio.Future[Any]]] = {}
        self._sent_waiters: list[tuple[Command, asyncio.Future[Any]]] = []
        self._keep_open = 0
        self._flushed = asyncio.Event()
        self._flushed.set()
        self.closed = False

    def __repr__(self) -> str:
        return f"<Session {self.session_id} {self.state.value}>"

    def touch(self) -> None:
        self.last_used = time.monotonic()

    def rotate_identity(self) -> str:
        self.identity_token = new_identity_token()
        return self.identity_token

    # -- outbound commands ---------------------------------------------------

    def send_command(self, comp: str, cmd: str, args: list[Any], reply: bool) -> asyncio.Future[Any]:
        """Buffer a command for the client and return its pending result.

        Reply commands resolve when the client answers through
        ``ComponentCommunications.returnReply``, or fail with
        ``error.operation.timeout`` once ``reply_timeout`` passes without an
        answer. Others resolve with ``None`` once the packet carrying them is
        compiled.
        """
        loop = asyncio.get_running_loop()
        wire_args = prepare_for_wire(args)
        future: asyncio.Future[Any] = loop.create_future()
        if reply:
            reply_id = next(self._reply_ids)
            command = make_command(comp, cmd, wire_args, reply_id)
            self._pending_replies[reply_id] = (comp, cmd, future)
            if self.reply_timeout is not None:
                timer = loop.call_later(self.reply_timeout, self._expire_reply, reply_id)
                future.add_done_callback(lambda _: timer.cancel())
        else:
            command = make_command(comp, cmd, wire_args)
            self._sent_waiters.append((command, future))
        self.buffer.buffer_command(command)
        self.tools.trace_call("to client", comp, cmd, args)
        return future

    def buffer_command(self, comp: str, cmd: str, *args: Any) -> int:
        """Buffer a command without tracking its result."""
        return self.buffer.buffer_command(make_command(comp, cmd, prepare_for_wire(list(args))))

    def resolve_reply(self, reply_id: int, value: Any = None, err: str | None = None) -> bool:
        pending = self._pending_replies.pop(reply_id, None)
        if pending is None:
            logger.warning("[%s] Reply for unknown reply id %s", self.session_id, reply_id)
            return False
        comp, cmd, future = pending
        if future.done():
            return False
        if err is not None:
            future.set_exception(RemoteCommandError(comp, cmd, err))
        else:
            future.set_result(value)
        return True

    def _expire_reply(self, reply_id: int) -> None:
        pending = self._pending_replies.pop(reply_id, None)
        if pending is None:
            return
        comp, cmd, future = pending
        if not future.done():
            logger.warning(
                "[%s] No reply to %s.%s within %ss", self.session_id, comp, cmd, self.reply_timeout)
            future.set_exception(RemoteCommandError(comp, cmd, REPLY_TIMEOUT))

    def take_commands_since(self, index: int) -> list[Command]:
        return self.buffer.take_from(index)

    def discard_commands_since(self, index: int) -> list[Command]:
        """Drop the commands buffered at or after *index* and cancel their results."""
        dropped = self.buffer.take_from(index)
        dropped_ids = {id(command) for command in dropped}
        kept = []
        for command, future in self._sent_waiters:
            if id(command) in dropped_ids:
                future.cancel()
            else:
                kept.append((command, future))
        self._sent_waiters = kept
        for command in dropped:
            reply_id = command.get("replyId")
            if reply_id is not None:
                pending = self._pending_replies.pop(reply_id, None)
                if pending is not None:
                    pending[2].cancel()
        if dropped:
            logger.debug("[%s] Discarded %d buffered commands", self.session_id, len(dropped))
        return dropped

    def compile(self, results: list[CommandResult | None] | None = None) -> Packet:
        """Compile the outbound buffer. Only call from inside ``self.queue``."""
        packet = self.buffer.compile(results)
        waiters, self._sent_waiters = self._sent_waiters, []
        for _, future in waiters:
            if not future.done():
                future.set_result(None)
        return packet

    # -- keep-open -----------------------------------------------------------

    def keep_open(self) -> None:
        self._keep_open += 1
        self._flushed.clear()

    def release(self) -> None:
        if self._keep_open == 0:
            logger.warning("[%s] flush() called without a matching keep_open()", self.session_id)
            return
        self._keep_open -= 1
        if self._keep_open == 0:
            self._flushed.set()

    async def wait_flushed(self) -> None:
        await self._flushed.wait()

    def close(self) -> None:
        self.closed = True
        for _, _, future in self._pending_replies.values():
            if not future.done():
                future.cancel()
        self._pending_replies.clear()
        for _, future in self._sent_waiters:
            if not future.done():
                future.cancel()
        self._sent_waiters.clear()
        self._keep_open = 0
        self._flushed.set()


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

class InMemorySessionStore:
    """Session store keeping entries in least-recently-used order.

    ``max_sessions`` bounds the number of entries; ``idle_timeout`` marks
    entries unused for that many seconds as evictable. Sessions with queued or
    running work are never evicted.
    """

    def __init__(self, max_sessions: int | None = None, idle_timeout: float | None = None) -> None:
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
            session.touch()
        return session

    def put(self, session: Session) -> list[Session]:
        """Store *session* and return the sessions evicted to make room."""
        self._sessions[session.session_id] = session
        self._sessions.move_to_end(session.session_id)
        evicted: list[Session] = []
        if self.max_sessions is not None:
            for candidate in list(self._sessions.values()):
                if len(self._sessions) <= self.max_sessions:
                    break
                if candidate is session or not candidate.queue.idle:
                    continue
                del self._sessions[candidate.session_id]
                evicted.append(candidate)
            if len(self._sessions) > self.max_sessions:
                logger.warning(
                    "Session store over capacity (%d > %d): remaining sessions are busy",
                    len(self._sessions), self.max_sessions,
                )
        return evicted

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def evict_idle(self, now: float | None = None) -> list[Session]:
        if self.idle_timeout is None:
            return []
        now = time.monotonic() if now is None else now
        stale = [
            s for s in self._sessions.values()
            if now - s.last_used >= self.idle_timeout and s.queue.idle
        ]
        for session in stale:
            del self._sessions[session.session_id]
        return stale

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))


# ---------------------------------------------------------------------------
# SessionRegistry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """Creates, looks up and destroys sessions and their component instances."""

    def __init__(
        self,
        components: ComponentRegistry,
        store: SessionStore,
        config: HostConfig,
        shared_context: dict[str, Any],
        tools_factory: Callable[[Session], Tools],
    ) -> None:
        self.components = components
        self.store = store
        self.config = config
        self.shared_context = shared_context
        self._tools_factory = tools_factory
        self._creating: dict[str, asyncio.Task[Session]] = {}

    def get(self, session_id: str) -> Session | None:
        return self.store.get(session_id)

    async def get_or_create(self, session_id: str, force_create: bool = True) -> Session | None:
        """Return the cached session, creating it if *force_create* is set.

        Raises:
            SessionInitError: If a library's ``setup`` hook fails. Nothing is cached.
        """
        if not force_create:
            return self.store.get(session_id)
        return await self.ensure(session_id)

    async def ensure(self, session_id: str) -> Session:
        """Return the cached session or create it.

        Creation installs every library component. Concurrent calls for the same
        id share a single creation.

        Raises:
            SessionInitError: If a library's ``setup`` hook fails. Nothing is cached.
        """
        session = self.store.get(session_id)
        if session is not None:
            return session

        task = self._creating.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._create(session_id))
            self._creating[session_id] = task
            task.add_done_callback(lambda _: self._creating.pop(session_id, None))
        return await asyncio.shield(task)

    async def _create(self, session_id: str) -> Session:
        session = Session(session_id, self.config.get("task_timeout"), self.config.get("reply_timeout"))
        session.tools = self._tools_factory(session)
        await session.queue.run_ordered(
            lambda: self.instantiate(session, self.components.libraries()))

        for evicted in self.store.put(session):
            logger.info("Evicting session %s to make room", evicted.session_id)
            await self.teardown(evicted)
        logger.debug("Created session %s with libraries %s", session_id, list(session.instances.libs))
        return session

    async def instantiate(
        self, session: Session, definitions: list[ComponentDefinition]
    ) -> list[HostEndpoint]:
        """Create, wire and set up instances for *definitions* not yet installed.

        Runs inside the session queue. Each new instance gets its handles
        injected, then ``setup`` runs on each in order, then every new instance
        receives its ``client`` proxy.

        Raises:
            SessionInitError: If any ``setup`` hook fails. The new instances are
                removed, the ones already set up are torn down, and commands
                buffered meanwhile are discarded.
        """
        mark = len(session.buffer)
        created: list[tuple[ComponentDefinition, HostEndpoint]] = []
        for definition in definitions:
            if definition.name in session.instances:
                continue
            instance = definition.host_instance_class()
            instance.instances = session.instances
            instance.shared_context = self.shared_context
            instance.definition = definition
            instance.context = session.context
            instance.tools = session.tools
            session.instances.add(definition, instance)
            created.append((definition, instance))

        for position, (definition, instance) in enumerate(created):
            try:
                await maybe_await(instance.setup())
            except Exception as exc:
                logger.exception("[%s] setup() of %s failed", session.session_id, definition.name)
                for never_ready, _ in created[position:]:
                    session.instances.remove(never_ready.name)
                await self.rollback(session, [i for _, i in created[:position]], mark)
                raise SessionInitError(session.session_id, definition.name) from exc

        for definition, instance in created:
            instance.client = PeerProxy(
                definition.name,
                {name: entry.reply for name, entry in definition.client_commands.items()},
                session.send_command,
            )
        return [instance for _, instance in created]

    async def rollback(self, session: Session, instances: list[HostEndpoint], mark: int) -> None:
        """Undo a failed install of *instances*.

        Commands buffered since *mark* are discarded, then each instance is
        removed and torn down, last installed first.
        """
        session.discard_commands_since(mark)
        for instance in instances:
            session.instances.remove(instance.definition.name)
        await self._teardown_instances(session, list(reversed(instances)))
        # Teardown hooks may buffer commands for components that are gone.
        session.discard_commands_since(mark)
        logger.info("[%s] Rolled back %s", session.session_id, [i.definition.name for i in instances])

    async def destroy(self, session_id: str) -> bool:
        """Remove *session_id* and run its teardown hooks. Returns False if unknown."""
        session = self.store.remove(session_id)
        if session is None:
            return False
        await self.teardown(session)
        return True

    async def evict_idle(self, now: float | None = None) -> list[str]:
        evicted = self.store.evict_idle(now)
        for session in evicted:
            logger.info("Evicting idle session %s", session.session_id)
            await self.teardown(session)
        return [s.session_id for s in evicted]

    async def teardown(self, session: Session) -> None:
        await self._teardown_instances(session, list(reversed(list(session.instances))))
        session.close()
        logger.debug("Destroyed session %s", session.session_id)

    async def _teardown_instances(self, session: Session, instances: list[SharedEndpoint]) -> None:
        for instance in instances:
            try:
                await maybe_await(instance.teardown())
            except Exception:
                logger.exception(
                    "[%s] teardown() of %s failed", session.session_id, instance.definition.name
                )
