"""Per-session helpers injected into every host-side component instance."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import TYPE_CHECKING, Any, MutableMapping

from ..config import DEFAULT_TRACE_MAX_ARGS_LENGTH, TraceConfig
from .packet import encode_packet

if TYPE_CHECKING:
    from ..interfaces import PushChannel
    from .bootstrap import Bootstrapper, InstallPayload
    from .session import Session

logger = logging.getLogger(__name__)


class _DeduplicationFilter(logging.Filter):
    """Drops records whose message was already seen within ``timeout`` seconds."""

    def __init__(self, timeout_seconds: float = 10):
        super().__init__()
        self.timeout = timeout_seconds
        self.last_seen: dict[str, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        return self.admit(record.getMessage())

    def admit(self, message: str) -> bool:
        msg_hash = hashlib.sha256(message.encode("utf-8")).hexdigest()
        now = time.monotonic()

        if msg_hash in self.last_seen and now - self.last_seen[msg_hash] < self.timeout:
            return False

        self.last_seen[msg_hash] = now
        if len(self.last_seen) > 1000:
            cutoff = now - self.timeout
            self.last_seen = {k: v for k, v in self.last_seen.items() if v > cutoff}
        return True


class SessionLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Prefixes every message with ``[session_id]``."""

    def __init__(self, base: logging.Logger, session_id: str, dedup_seconds: float = 10) -> None:
        super().__init__(base, {"session_id": session_id})
        self._dedup = _DeduplicationFilter(dedup_seconds)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['session_id']}] {msg}", kwargs  # type: ignore[index]

    def peer_warning(self, msg: str, *args: Any) -> None:
        """Warning caused by peer input; repeats within the window are dropped."""
        if self._dedup.admit(msg % args if args else msg):
            self.warning(msg, *args)


def format_call(name: str, args: Any, max_length: int) -> str:
    try:
        rendered = json.dumps(args, default=repr)
    except (TypeError, ValueError):
        rendered = repr(args)
    if len(rendered) > max_length:
        rendered = rendered[:max_length] + "..."
    return f"{name}({rendered})"


class Tools:
    """Helpers bound to one host session.

    Available to components as ``self.tools``.
    """

    def __init__(
        self,
        session: Session,
        bootstrapper: Bootstrapper,
        trace: TraceConfig | None = None,
        push_channel: PushChannel | None = None,
    ) -> None:
        self.session = session
        self._bootstrapper = bootstrapper
        self._trace: TraceConfig = trace or {"enabled": False}
        self._push_channel = push_channel
        self.logger = SessionLoggerAdapter(logging.getLogger("tandem.session"), session.session_id)

    # -- logging ---------------------------------------------------------------

    def log(self, msg: str, *args: Any) -> None:
        self.logger.info(msg, *args)

    def log_warn(self, msg: str, *args: Any) -> None:
        self.logger.warning(msg, *args)

    def peer_warning(self, msg: str, *args: Any) -> None:
        self.logger.peer_warning(msg, *args)

    def trace_call(self, direction: str, comp: str, cmd: str, args: Any) -> None:
        if not self._trace.get("enabled"):
            return
        max_length = self._trace.get("max_args_length", DEFAULT_TRACE_MAX_ARGS_LENGTH)
        self.logger.debug("[TRACE] %s %s", direction, format_call(f"{comp}.{cmd}", args, max_length))

    # -- flushing ----------------------------------------------------------------

    def keep_open(self) -> None:
        """Hold the current response until a matching :meth:`flush`."""
        self.session.keep_open()

    def flush(self) -> None:
        """Release one :meth:`keep_open`; the response is sent once none remain."""
        self.session.release()

    async def push_now(self) -> bool:
        """Send the buffered commands right away through the push channel.

        Returns False (and leaves the commands buffered) if the host has no
        push channel.
        """
        if self._push_channel is None:
            logger.debug("[%s] No push channel, commands stay buffered", self.session.session_id)
            return False
        channel = self._push_channel
        session = self.session

        async def push() -> bool:
            if not session.buffer:
                return False
            raw = encode_packet(session.compile(None))
            await channel.push(session.session_id, raw)
            return True

        return await self._in_queue(push)

    # -- components --------------------------------------------------------------

    async def install_components(self, names: list[str]) -> InstallPayload:
        """Install *names* (plus includes) for this session and return the payload."""
        return await self._in_queue(
            lambda: self._bootstrapper.install_components(self.session, list(names)))

    async def request_components(self, *names: str) -> InstallPayload:
        """Install *names* and tell the client to install them too."""
        payload = await self.install_components(list(names))
        self.session.buffer_command("ComponentBootstrap", "installComponents", payload)
        return payload

    def refresh(self) -> None:
        """Ask the client to reload."""
        self.session.buffer_command("ComponentCommunications", "requestRefresh")

    def notify_principal_change(self, principal: Any = None) -> str:
        """Record a privilege change and issue the client a fresh identity token."""
        self.session.context.principal = principal
        token = self.session.rotate_identity()
        self.session.buffer_command("ComponentCommunications", "updateIdentity", token)
        self.logger.info("Principal changed, identity token rotated")
        return token

    async def _in_queue(self, factory: Any) -> Any:
        if self.session.queue.in_worker():
            return await factory()
        return await self.session.queue.run_ordered(factory)
