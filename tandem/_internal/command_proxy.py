"""
Command proxies & dispatch.

This module contains:
- PeerProxy (stubs for the peer's exposed commands of one component)
- dispatch_command (run one inbound command against a local instance)
- execute_commands (run a batch with per-command partial failure)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import (
    CommandExecutionError,
    PeerError,
    UnknownCommandError,
    UnknownComponentError,
)
from .definitions import Side
from .packet import Command, CommandResult, error_result, ok_result
from .wire_serialization import prepare_for_wire, restore_from_wire

if TYPE_CHECKING:
    from .session import InstanceMap

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "error.internal"
REPLY_TIMEOUT = "error.operation.timeout"

SendCommand = Callable[[str, str, list[Any], bool], "asyncio.Future[Any]"]


class _DispatchTools(Protocol):
    def trace_call(self, direction: str, comp: str, cmd: str, args: Any) -> None: ...

    def peer_warning(self, msg: str, *args: Any) -> None: ...


class PeerProxy:
    """Stubs for the exposed commands of one component on the other side.

    Calling a stub does not execute anything locally: the command is handed to
    *send*, which buffers it for the peer and returns a future for its result.
    """

    def __init__(self, component: str, commands: Mapping[str, bool], send: SendCommand) -> None:
        self._component = component
        self._commands = dict(commands)
        self._send = send

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name not in self._commands:
            raise AttributeError(f"{self._component} exposes no command {name!r} on the peer")
        reply = self._commands[name]
        component = self._component
        send = self._send

        def stub(*args: Any) -> asyncio.Future[Any]:
            return send(component, name, list(args), reply)

        stub.__name__ = name
        stub.__qualname__ = f"{component}.{name}"
        return stub

    def __dir__(self) -> list[str]:
        return sorted(self._commands)

    def __repr__(self) -> str:
        return f"<PeerProxy {self._component} {sorted(self._commands)}>"


async def dispatch_command(
    instances: InstanceMap,
    side: Side,
    command: Command,
    tools: _DispatchTools | None = None,
) -> Any:
    """Execute one inbound *command* against the matching local instance.

    *side* is the side executing the command.

    Raises:
        UnknownComponentError: No installed instance has that name.
        UnknownCommandError: The component does not expose that command.
        CommandExecutionError: The method raised. ``peer_message`` holds what
            may be sent to the peer.
    """
    comp, cmd = command["comp"], command["cmd"]
    instance = instances.get(comp)
    if instance is None:
        raise UnknownComponentError(comp)
    entry = instance.definition.commands(side).get(cmd)
    if entry is None:
        raise UnknownCommandError(comp, cmd)

    args = restore_from_wire(command.get("args") or [])
    if tools is not None:
        tools.trace_call("from peer", comp, cmd, args)

    try:
        result = getattr(instance, entry.attribute)(*args)
        if inspect.isawaitable(result):
            result = await result
    except PeerError as exc:
        raise CommandExecutionError(comp, cmd, str(exc)) from exc
    except Exception as exc:
        logger.exception("Command %s.%s failed", comp, cmd)
        raise CommandExecutionError(comp, cmd) from exc
    return result


async def execute_commands(
    instances: InstanceMap,
    commands: list[Command],
    tools: _DispatchTools,
) -> list[CommandResult | None]:
    """Execute client commands in order and return results aligned by index.

    Unknown components and commands are skipped with a warning and yield
    ``None``. Failing commands yield ``{"value": None, "err": ...}``. Neither
    stops the remaining commands.
    """
    results: list[CommandResult | None] = []
    for command in commands:
        try:
            value = await dispatch_command(instances, Side.HOST, command, tools)
        except (UnknownComponentError, UnknownCommandError) as exc:
            tools.peer_warning("Skipping invalid command: %s", exc)
            results.append(None)
            continue
        except CommandExecutionError as exc:
            results.append(error_result(exc.peer_message))
            continue

        try:
            results.append(ok_result(prepare_for_wire(value)))
        except TypeError:
            logger.exception(
                "Result of %s.%s cannot be sent to the client", command["comp"], command["cmd"])
            results.append(error_result(INTERNAL_ERROR))
    return results
