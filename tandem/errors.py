"""Exception hierarchy for tandem.

Protocol-level failures never execute user commands. Dispatch-level failures
are converted into per-command results and never abort sibling commands.
Only :class:`PeerError` messages are ever sent across the boundary.
"""

from __future__ import annotations


class TandemError(Exception):
    """Base exception for all tandem errors."""


class ComponentDefinitionError(TandemError):
    """A component was registered with an invalid definition."""


class ProtocolError(TandemError):
    """A request could not be accepted at the envelope level."""

    marker = "error.protocol"


class MalformedPacketError(ProtocolError):
    """The payload is not a well-formed packet."""

    marker = "error.malformed"


class VersionMismatchError(ProtocolError):
    """The peer runs a different protocol version."""

    marker = "error.version"

    def __init__(self, expected: str, received: object) -> None:
        super().__init__(f"Expected version {expected!r}, got {received!r}")
        self.expected = expected
        self.received = received


class IdentityMismatchError(ProtocolError):
    """The identity token does not match the one issued to the session."""

    marker = "error.identity"


class TooManyCommandsError(ProtocolError):
    """A single request carried more commands than allowed."""

    marker = "error.tooManyCommands"

    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"Request carried {count} commands, limit is {limit}")
        self.count = count
        self.limit = limit


class UnknownComponentError(TandemError):
    """A component name is not registered or not installed."""

    def __init__(self, component: str) -> None:
        super().__init__(f"Unknown component: {component}")
        self.component = component


class UnknownCommandError(TandemError):
    """A command is not exposed by the component."""

    def __init__(self, component: str, command: str) -> None:
        super().__init__(f"Unknown command: {component}.{command}")
        self.component = component
        self.command = command


class ComponentGateError(TandemError):
    """A component's install gate rejected installation for this session."""

    def __init__(self, component: str) -> None:
        super().__init__(f"Installation of component {component} was rejected")
        self.component = component


class CommandExecutionError(TandemError):
    """An exposed method raised while executing a peer command."""

    def __init__(self, component: str, command: str, peer_message: str = "error.internal") -> None:
        super().__init__(f"{component}.{command} failed")
        self.component = component
        self.command = command
        self.peer_message = peer_message


class SessionInitError(TandemError):
    """A setup hook failed while creating a session or installing components."""

    def __init__(self, session_id: str, component: str | None = None) -> None:
        where = f" (component {component})" if component else ""
        super().__init__(f"Failed to initialize session {session_id}{where}")
        self.session_id = session_id
        self.component = component


class RemoteCommandError(TandemError):
    """The peer reported an error for a command sent from this side."""

    def __init__(self, component: str, command: str, err: str) -> None:
        super().__init__(f"{component}.{command} failed remotely: {err}")
        self.component = component
        self.command = command
        self.err = err


class PeerError(TandemError):
    """Raise from an exposed method to send ``str(exc)`` to the peer as ``err``."""
