"""
Python client runtime.

Mirrors the host's component sessions from the client side: installs client
bundles named by install payloads (definitions arrive as data, the bundles
themselves are registered locally), batches calls to host commands, and
executes the commands the host sends back.

Two ordered queues keep the client deterministic without deadlocking:
exchanges with the host run one at a time in call order, and host commands
run one at a time in arrival order. A command handler may therefore await a
host call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, NamedTuple

from ..config import ClientConfig, TraceConfig, resolve_client_config
from ..errors import (
    CommandExecutionError,
    RemoteCommandError,
    SessionInitError,
    UnknownCommandError,
    UnknownComponentError,
)
from ..interfaces import PushReceiver
from .builtin_libs import BOOTSTRAP, COMMUNICATIONS, install_builtin_libraries
from .command_proxy import INTERNAL_ERROR, PeerProxy, dispatch_command
from .definitions import ComponentRegistry, Side
from .envelope import RequestMetadata
from .ordered_queue import OrderedExecutionQueue
from .packet import Command, CommandResult, Packet, decode_packet, encode_packet, make_command
from .session import InstanceMap, SessionContext, maybe_await
from .tools import SessionLoggerAdapter, format_call
from .wire_serialization import prepare_for_wire, restore_from_wire

if TYPE_CHECKING:
    from ..interfaces import Transport
    from ..shared import ClientEndpoint
    from .bootstrap import InstallPayload

logger = logging.getLogger(__name__)

NOT_EXECUTED = "error.notExecuted"
SKIPPED = "error.skipped"

AfterResult = Callable[[Any], Awaitable[Any]]


class _Outgoing(NamedTuple):
    command: Command
    future: asyncio.Future[Any]
    after: AfterResult | None


class ClientContext(SessionContext):
    """Client-side session context; also gives built-in libraries the runtime."""

    def __init__(self, session_id: str, runtime: ClientRuntime) -> None:
        super().__init__(session_id)
        self.runtime = runtime


class ClientTools:
    """Helpers bound to one client session, available as ``self.tools``."""

    def __init__(self, runtime: ClientRuntime, trace: TraceConfig | None = None) -> None:
        self.runtime = runtime
        self._trace: TraceConfig = trace or {"enabled": False}
        self.logger = SessionLoggerAdapter(logging.getLogger("tandem.client"), runtime.session_id)

    def log(self, msg: str, *args: Any) -> None:
        self.logger.info(msg, *args)

    def log_warn(self, msg: str, *args: Any) -> None:
        self.logger.warning(msg, *args)

    def peer_warning(self, msg: str, *args: Any) -> None:
        self.logger.peer_warning(msg, *args)

    def trace_call(self, direction: str, comp: str, cmd: str, args: Any) -> None:
        if self._trace.get("enabled"):
            self.logger.debug(
                "[TRACE] %s %s", direction, format_call(f"{comp}.{cmd}", args, self._trace.get("max_args_length", 120)))

    async def request_components(self, *names: str) -> list[ClientEndpoint]:
        """Ask the host to install *names*; returns the new local instances."""
        return await self.runtime.call_host(
            BOOTSTRAP, "requestComponents", list(names), after=self.runtime.install)

    def refresh(self) -> None:
        self.runtime.handle_refresh()


class ClientRuntime:
    """Client side of one session."""

    def __init__(
        self,
        registry: ComponentRegistry,
        transport: Transport,
        session_id: str,
        config: ClientConfig | None = None,
        *,
        trace: TraceConfig | None = None,
        on_refresh: Callable[[ClientRuntime], Any] | None = None,
    ) -> None:
        install_builtin_libraries(registry)
        self.registry = registry
        self.transport = transport
        self.session_id = session_id
        self.config = resolve_client_config(config)
        self.instances = InstanceMap()
        self.shared_context: dict[str, Any] = {}
        self.context = ClientContext(session_id, self)
        self.tools = ClientTools(self, trace)
        self.identity_token: str | None = None
        self.version: str | None = None
        self.refresh_requested = False
        self.on_refresh = on_refresh
        self._outbox: list[_Outgoing] = []
        self._flush_handle: asyncio.TimerHandle | None = None
        self._exchanges = OrderedExecutionQueue(f"{session_id}:exchanges")
        self._commands = OrderedExecutionQueue(f"{session_id}:commands")
        self._background: set[asyncio.Task[Any]] = set()

        if isinstance(transport, PushReceiver):
            transport.set_push_handler(session_id, self.receive_push)

    # -- lifecycle -------------------------------------------------------------

    async def bootstrap(self, features: list[str] | None = None) -> InstallPayload:
        """Fetch the install payload and install everything it lists."""
        requested = list(features if features is not None else self.config["features"])
        raw = await self.transport.bootstrap(self.session_id, requested)
        payload: InstallPayload = json.loads(raw)
        self.refresh_requested = False
        await self._commands.run_ordered(lambda: self.install(payload, initial=True))
        return payload

    async def reload(self, features: list[str] | None = None) -> InstallPayload:
        """Drop every local instance and bootstrap again."""
        await self.close()
        return await self.bootstrap(features)

    async def resync(self) -> None:
        """Tell a host that may have lost this session which components are installed."""
        await self._exchange_now([], installed=self.instances.names())

    async def close(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        for instance in reversed(list(self.instances)):
            try:
                await maybe_await(instance.teardown())
            except Exception:
                logger.exception("[%s] teardown() of %s failed", self.session_id, instance.definition.name)
        self.instances = InstanceMap()

    def handle_refresh(self) -> None:
        logger.info("[%s] Host requested a refresh", self.session_id)
        self.refresh_requested = True
        if self.on_refresh is not None:
            result = self.on_refresh(self)
            if asyncio.iscoroutine(result):
                self._track(asyncio.ensure_future(result))

    # -- installation ----------------------------------------------------------

    async def install(self, payload: InstallPayload, *, initial: bool = False) -> list[ClientEndpoint]:
        """Install the components described by *payload* and run its commands.

        Unless *initial* is set, every other installed instance gets
        ``on_new_component`` for each new one.

        Definitions without a local client bundle are skipped with an error log;
        calls to them are simply unavailable on this side.

        Raises:
            SessionInitError: A ``setup`` hook failed.
        """
        if payload.get("identityToken"):
            self.identity_token = payload["identityToken"]
        if payload.get("version"):
            self.version = payload["version"]

        created: list[ClientEndpoint] = []
        for wire, ctor_arguments in zip(payload["defs"], payload["ctorArguments"]):
            name = wire["name"]
            if name in self.instances:
                continue
            definition = self.registry.get(name)
            if definition is None:
                logger.error("[%s] No local bundle for component %s", self.session_id, name)
                continue
            instance = definition.client_instance_class()
            instance.instances = self.instances
            instance.shared_context = self.shared_context
            instance.definition = definition
            instance.context = self.context
            instance.tools = self.tools  # type: ignore[assignment]
            instance.host = PeerProxy(name, wire["hostCommands"], self._send)
            self.instances.add(definition, instance)
            try:
                await maybe_await(instance.setup(*restore_from_wire(ctor_arguments)))
            except Exception as exc:
                logger.exception("[%s] setup() of %s failed", self.session_id, name)
                self.instances.remove(name)
                raise SessionInitError(self.session_id, name) from exc
            created.append(instance)

        for instance in created:
            await maybe_await(instance.init_client())
        if not initial:
            for instance in created:
                for other in list(self.instances):
                    if other is not instance:
                        await maybe_await(other.on_new_component(instance))

        await self.execute_host_commands(payload.get("commands") or [])
        return created

    # -- outbound --------------------------------------------------------------

    def call_host(
        self, comp: str, cmd: str, args: list[Any], after: AfterResult | None = None
    ) -> asyncio.Future[Any]:
        """Queue a host command; the future resolves with its result.

        If *after* is given, it runs on the command queue with the result and
        its return value resolves the future instead.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._outbox.append(_Outgoing(make_command(comp, cmd, prepare_for_wire(args)), future, after))
        self.tools.trace_call("to host", comp, cmd, args)
        self._schedule_flush()
        return future

    def _send(self, comp: str, cmd: str, args: list[Any], reply: bool) -> asyncio.Future[Any]:
        return self.call_host(comp, cmd, args)

    def _schedule_flush(self) -> None:
        if self._flush_handle is None:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(self.config["batch_delay"], self._flush_later)

    def _flush_later(self) -> None:
        self._flush_handle = None
        self._track(asyncio.ensure_future(self.flush()))

    async def flush(self) -> None:
        """Send every queued host call now and wait until the response is handled."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        batch, self._outbox = self._outbox, []
        if batch:
            await self._exchange_now(batch)

    async def drain(self) -> None:
        """Send queued host calls and wait until every follow-up has settled.

        Do not call from a command handler: the handler's own task would be
        waited on.
        """
        while True:
            await self.flush()
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _exchange_now(self, batch: list[_Outgoing], installed: list[str] | None = None) -> None:
        follow_ups = await self._exchanges.run_ordered(lambda: self._exchange(batch, installed))
        if follow_ups:
            await asyncio.gather(*follow_ups, return_exceptions=True)

    def _metadata(self, installed: list[str] | None) -> RequestMetadata:
        metadata: RequestMetadata = {}
        if self.identity_token is not None:
            metadata["identityToken"] = self.identity_token
        if self.version is not None:
            metadata["version"] = self.version
        if installed is not None:
            metadata["installedComponents"] = installed
        return metadata

    async def _exchange(self, batch: list[_Outgoing], installed: list[str] | None) -> list[asyncio.Task[Any]]:
        raw = encode_packet(Packet(commands=[entry.command for entry in batch]))
        try:
            response = decode_packet(await self.transport.send(self.session_id, raw, self._metadata(installed)))
        except Exception as exc:
            logger.exception("[%s] Exchange with host failed", self.session_id)
            for entry in batch:
                if not entry.future.done():
                    entry.future.set_exception(exc)
            return []

        after_tasks = self._settle(batch, response.get("commandExecutionResults"))
        follow_ups = list(after_tasks)
        commands = response["commands"]
        if commands:
            async def run_commands() -> None:
                if after_tasks:
                    await asyncio.gather(*after_tasks, return_exceptions=True)
                await self.execute_host_commands(commands)

            follow_ups.append(self._track(self._commands.submit(run_commands)))
        return follow_ups

    def _settle(self, batch: list[_Outgoing], results: list[CommandResult | None] | None) -> list[asyncio.Task[Any]]:
        after_tasks: list[asyncio.Task[Any]] = []
        envelope_error: str | None = None
        if results is None:
            envelope_error = NOT_EXECUTED
        elif len(results) != len(batch):
            first = results[0] if results else None
            envelope_error = (first or {}).get("err") or NOT_EXECUTED

        for index, entry in enumerate(batch):
            comp, cmd = entry.command["comp"], entry.command["cmd"]
            if entry.future.done():
                continue
            result = None if envelope_error or results is None else results[index]
            if envelope_error or result is None:
                entry.future.set_exception(RemoteCommandError(comp, cmd, envelope_error or SKIPPED))
            elif result["err"] is not None:
                entry.future.set_exception(RemoteCommandError(comp, cmd, result["err"]))
            else:
                value = restore_from_wire(result["value"])
                if entry.after is None:
                    entry.future.set_result(value)
                else:
                    after_tasks.append(
                        self._track(asyncio.ensure_future(self._run_after(entry, entry.after, value))))
        return after_tasks

    async def _run_after(self, entry: _Outgoing, after: AfterResult, value: Any) -> None:
        try:
            result = await after(value)
        except Exception as exc:
            if not entry.future.done():
                entry.future.set_exception(exc)
            return
        if not entry.future.done():
            entry.future.set_result(result)

    # -- inbound ---------------------------------------------------------------

    def receive_push(self, raw: bytes) -> asyncio.Task[None]:
        """Queue the commands of a packet the host pushed."""
        packet = decode_packet(raw)
        return self._track(self._commands.submit(lambda: self.execute_host_commands(packet["commands"])))

    async def execute_host_commands(self, commands: list[Command]) -> None:
        """Run host commands in order, answering those that carry a reply id."""
        for command in commands:
            value: Any = None
            err: str | None = None
            try:
                value = await dispatch_command(self.instances, Side.CLIENT, command, self.tools)
            except (UnknownComponentError, UnknownCommandError) as exc:
                logger.error("[%s] Host sent invalid command: %s", self.session_id, exc)
                err = SKIPPED
            except CommandExecutionError as exc:
                err = exc.peer_message

            reply_id = command.get("replyId")
            if reply_id is None:
                continue
            try:
                future = self.call_host(COMMUNICATIONS, "returnReply", [reply_id, value, err])
            except TypeError:
                logger.exception("[%s] Reply to %s.%s cannot be sent", self.session_id, command["comp"], command["cmd"])
                future = self.call_host(COMMUNICATIONS, "returnReply", [reply_id, None, INTERNAL_ERROR])
            future.add_done_callback(self._log_failed_reply)

    def _log_failed_reply(self, future: asyncio.Future[Any]) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("[%s] Host did not accept reply: %s", self.session_id, future.exception())

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
