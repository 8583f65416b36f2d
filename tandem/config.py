from __future__ import annotations

import logging
from typing import Any, TypedDict

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "1"
DEFAULT_MAX_COMMANDS_PER_REQUEST = 1024
DEFAULT_TRACE_MAX_ARGS_LENGTH = 120
DEFAULT_CLIENT_BATCH_DELAY = 0.001
DEFAULT_REPLY_TIMEOUT = 3.0


class TraceConfig(TypedDict, total=False):
    """Call tracing for commands crossing the boundary."""

    enabled: bool
    """Log every command sent or received at DEBUG level."""

    max_args_length: int
    """Truncate the JSON rendering of traced arguments to this many characters."""


class HostConfig(TypedDict, total=False):
    """Configuration for the :class:`~tandem.host.ComponentHost`.

    Every key is optional; :func:`resolve_host_config` fills in defaults.
    """

    protocol_version: str
    """Version token every request must carry. A mismatch forces the peer to refresh."""

    max_commands_per_request: int
    """Upper bound on commands in one inbound packet. ``0`` disables the check."""

    lazy_load: bool
    """If False, every feature component is installed at bootstrap."""

    initial_components: list[str]
    """Feature components installed at bootstrap in addition to the requested ones."""

    trace: TraceConfig
    """Command tracing options."""

    session_idle_timeout: float | None
    """Seconds of inactivity after which an idle session may be evicted."""

    max_sessions: int | None
    """Maximum number of cached sessions. The least recently used idle one is evicted."""

    task_timeout: float | None
    """Deadline in seconds for one queued request. ``None`` waits indefinitely."""

    reply_timeout: float | None
    """Seconds a host call to a reply client command waits for its answer.
    Unanswered calls fail with ``error.operation.timeout``. ``None`` waits until
    the session is destroyed."""


class ClientConfig(TypedDict, total=False):
    """Configuration for the Python :class:`~tandem.ClientRuntime`."""

    batch_delay: float
    """Seconds to wait before sending batched host calls."""

    features: list[str]
    """Feature components requested during bootstrap."""


def resolve_host_config(config: HostConfig | None = None) -> HostConfig:
    """Return a copy of *config* with defaults applied.

    Raises:
        ValueError: If a value is out of range.
    """
    given: dict[str, Any] = dict(config or {})
    trace: TraceConfig = {
        "enabled": False,
        "max_args_length": DEFAULT_TRACE_MAX_ARGS_LENGTH,
    }
    trace.update(given.pop("trace", None) or {})

    resolved: HostConfig = {
        "protocol_version": DEFAULT_PROTOCOL_VERSION,
        "max_commands_per_request": DEFAULT_MAX_COMMANDS_PER_REQUEST,
        "lazy_load": True,
        "initial_components": [],
        "session_idle_timeout": None,
        "max_sessions": None,
        "task_timeout": None,
        "reply_timeout": DEFAULT_REPLY_TIMEOUT,
    }
    unknown = set(given) - set(HostConfig.__annotations__)
    if unknown:
        raise ValueError(f"Unknown host config keys: {sorted(unknown)}")
    resolved.update(given)  # type: ignore[typeddict-item]
    resolved["trace"] = trace

    if not isinstance(resolved["protocol_version"], str) or not resolved["protocol_version"]:
        raise ValueError("protocol_version must be a non-empty string")
    if resolved["max_commands_per_request"] < 0:
        raise ValueError("max_commands_per_request must be >= 0")
    for key in ("session_idle_timeout", "task_timeout", "reply_timeout"):
        value = resolved[key]  # type: ignore[literal-required]
        if value is not None and value <= 0:
            raise ValueError(f"{key} must be positive or None")
    if resolved["max_sessions"] is not None and resolved["max_sessions"] < 1:
        raise ValueError("max_sessions must be >= 1 or None")
    if trace["max_args_length"] < 0:
        raise ValueError("trace.max_args_length must be >= 0")

    logger.debug("Resolved host config: %s", resolved)
    return resolved


def resolve_client_config(config: ClientConfig | None = None) -> ClientConfig:
    resolved: ClientConfig = {"batch_delay": DEFAULT_CLIENT_BATCH_DELAY, "features": []}
    resolved.update(config or {})
    if resolved["batch_delay"] < 0:
        raise ValueError("batch_delay must be >= 0")
    return resolved
