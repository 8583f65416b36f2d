"""
Packet Buffer & wire packet structures.

This module contains:
1. Data Structures: Command, CommandResult, Packet TypedDicts
2. PacketBuffer: per-session accumulation of outbound commands
3. encode_packet / decode_packet: JSON framing with shape validation
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, TypedDict

from typing_extensions import NotRequired

from ..errors import MalformedPacketError

logger = logging.getLogger(__name__)

_debug_wire = os.environ.get("TANDEM_DEBUG_WIRE") == "1"

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class Command(TypedDict):
    comp: str
    cmd: str
    args: list[Any]
    replyId: NotRequired[int]


class CommandResult(TypedDict):
    value: Any
    err: str | None


class Packet(TypedDict):
    commands: list[Command]
    commandExecutionResults: NotRequired[list[CommandResult | None] | None]


def make_command(comp: str, cmd: str, args: list[Any], reply_id: int | None = None) -> Command:
    command = Command(comp=comp, cmd=cmd, args=args)
    if reply_id is not None:
        command["replyId"] = reply_id
    return command


def ok_result(value: Any) -> CommandResult:
    return CommandResult(value=value, err=None)


def error_result(err: str) -> CommandResult:
    return CommandResult(value=None, err=err)


# ---------------------------------------------------------------------------
# PacketBuffer
# ---------------------------------------------------------------------------


class PacketBuffer:
    """Ordered accumulation of commands destined for the peer.

    ``compile`` takes a snapshot and clears the buffer in one step. Callers only
    compile from inside the owning session's ordered queue, so no command can be
    added while a compile is in progress.
    """

    def __init__(self) -> None:
        self._commands: list[Command] = []

    def buffer_command(self, command: Command) -> int:
        """Append *command* and return its index in the next packet."""
        self._commands.append(command)
        return len(self._commands) - 1

    def buffer_many(self, commands: list[Command]) -> None:
        self._commands.extend(commands)

    def take_from(self, index: int) -> list[Command]:
        """Remove and return the commands buffered at or after *index*."""
        taken = self._commands[index:]
        del self._commands[index:]
        return taken

    def compile(self, results: list[CommandResult | None] | None = None) -> Packet:
        """Return a packet with all buffered commands and *results*, then reset."""
        commands, self._commands = self._commands, []
        packet = Packet(commands=commands, commandExecutionResults=results)
        if _debug_wire:
            logger.debug("Compiled packet with %d commands, results=%s", len(commands), results)
        return packet

    @property
    def pending(self) -> tuple[Command, ...]:
        return tuple(self._commands)

    def __len__(self) -> int:
        return len(self._commands)

    def __bool__(self) -> bool:
        return bool(self._commands)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_packet(packet: Packet) -> bytes:
    """Serialize *packet* as UTF-8 JSON. A ``None`` result list is omitted."""
    data: dict[str, Any] = {"commands": packet["commands"]}
    results = packet.get("commandExecutionResults")
    if results is not None:
        data["commandExecutionResults"] = results
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def _check_command(index: int, command: Any) -> Command:
    if not isinstance(command, dict):
        raise MalformedPacketError(f"Command {index} is not an object")
    if not isinstance(command.get("comp"), str) or not isinstance(command.get("cmd"), str):
        raise MalformedPacketError(f"Command {index} is missing comp/cmd")
    args = command.get("args", [])
    if args is None:
        args = []
    if not isinstance(args, list):
        raise MalformedPacketError(f"Command {index} has non-list args")
    reply_id = command.get("replyId")
    if reply_id is not None and (not isinstance(reply_id, int) or isinstance(reply_id, bool)):
        raise MalformedPacketError(f"Command {index} has invalid replyId")
    return make_command(command["comp"], command["cmd"], args, reply_id)


def decode_packet(raw: bytes | str) -> Packet:
    """Parse and validate a packet.

    Raises:
        MalformedPacketError: If *raw* is not a JSON packet of the expected shape.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise MalformedPacketError(f"Packet is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedPacketError("Packet must be a JSON object")
    commands = data.get("commands", [])
    if not isinstance(commands, list):
        raise MalformedPacketError("'commands' must be a list")

    packet = Packet(commands=[_check_command(i, c) for i, c in enumerate(commands)])

    results = data.get("commandExecutionResults")
    if results is not None:
        if not isinstance(results, list):
            raise MalformedPacketError("'commandExecutionResults' must be a list")
        for i, result in enumerate(results):
            if result is not None and (not isinstance(result, dict) or "err" not in result and "value" not in result):
                raise MalformedPacketError(f"Result {i} is not a result object")
        packet["commandExecutionResults"] = [
            None if r is None else CommandResult(value=r.get("value"), err=r.get("err"))
            for r in results
        ]
    if _debug_wire:
        logger.debug("Decoded packet: %s", data)
    return packet
