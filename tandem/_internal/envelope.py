"""
RPC envelope checks.

Every inbound request carries out-of-band metadata next to its packet: the
identity token issued to the session and the protocol version the peer was
built for. Both are checked before any command runs; the checks have no side
effects beyond rejecting the request.
"""

from __future__ import annotations

import hmac
import secrets
from typing import TYPE_CHECKING, Any, TypedDict

from ..errors import IdentityMismatchError, VersionMismatchError
from .packet import Packet, error_result, make_command

if TYPE_CHECKING:
    from .session import Session

IDENTITY_TOKEN_BYTES = 32

REFRESH_COMPONENT = "ComponentCommunications"
REFRESH_COMMAND = "requestRefresh"


class RequestMetadata(TypedDict, total=False):
    identityToken: str
    version: str
    installedComponents: list[str]
    """Only sent when the peer reconnects to a host that may have lost its session."""


def new_identity_token() -> str:
    return secrets.token_urlsafe(IDENTITY_TOKEN_BYTES)


def verify_version(metadata: RequestMetadata, current_version: str) -> None:
    received = metadata.get("version")
    if received != current_version:
        raise VersionMismatchError(current_version, received)


def verify_identity(session: Session, metadata: RequestMetadata) -> None:
    token: Any = metadata.get("identityToken")
    if not isinstance(token, str) or not hmac.compare_digest(
        token.encode("utf-8"), session.identity_token.encode("utf-8")
    ):
        raise IdentityMismatchError(f"Identity token mismatch for session {session.session_id}")


def verify(session: Session, metadata: RequestMetadata, current_version: str) -> None:
    """Raise a ``ProtocolError`` subclass unless *metadata* is acceptable for *session*."""
    verify_version(metadata, current_version)
    verify_identity(session, metadata)


def refresh_packet() -> Packet:
    """A packet whose only content is the instruction to reload."""
    return Packet(commands=[make_command(REFRESH_COMPONENT, REFRESH_COMMAND, [])])


def error_packet(marker: str) -> Packet:
    """A packet whose only content is one synthetic error result."""
    return Packet(commands=[], commandExecutionResults=[error_result(marker)])
