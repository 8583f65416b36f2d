"""Public base classes for component behavior bundles.

A component is declared with up to three bundles: a *base* bundle shared by
both sides (subclass :class:`SharedEndpoint`), a *host* bundle
(:class:`HostEndpoint`) and a *client* bundle (:class:`ClientEndpoint`). One
instance is created per session and component; the framework injects the
handles listed on :class:`SharedEndpoint` before any hook runs.

Hooks may be plain functions or coroutines.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ._internal.definitions import ComponentDefinition
    from ._internal.session import InstanceMap, SessionContext
    from ._internal.tools import Tools
    from .config import HostConfig


class SharedEndpoint:
    """Behavior available on both sides of the boundary."""

    instances: InstanceMap
    """All component instances of the owning session."""

    shared_context: dict[str, Any]
    """Process-wide mutable context shared by every session on this side."""

    definition: ComponentDefinition
    """Static definition of this component."""

    context: SessionContext
    """Per-session context shared by all components of the session."""

    tools: Tools
    """Per-session helpers (logging, flushing, component requests)."""

    def setup(self, *args: Any) -> Any:
        """One-time constructor hook, run after handles are injected."""

    def teardown(self) -> Any:
        """Called when the session is destroyed."""


class HostEndpoint(SharedEndpoint):
    """Host-side behavior bundle."""

    client: Any
    """Proxy for the client-side exposed commands of this component."""

    @classmethod
    def init_host(cls, shared_context: dict[str, Any], config: HostConfig) -> None:
        """Per-process initialization, called once by ``ComponentHost.start``."""

    @classmethod
    def may_install(cls, context: SessionContext) -> bool:
        """Return False to reject installation of this component for a session."""
        return True

    def on_new_client(self) -> Any:
        """Called once when the owning session is first bootstrapped."""

    def on_bootstrap_ready(self) -> Any:
        """Called every time the component is (re)installed on the client."""

    def get_client_ctor_arguments(self) -> list[Any]:
        """Arguments passed to the client instance's ``setup`` hook."""
        return []


class ClientEndpoint(SharedEndpoint):
    """Client-side behavior bundle."""

    host: Any
    """Proxy for the host-side exposed commands of this component."""

    def init_client(self) -> Any:
        """Called after every component of an install batch is set up."""

    def on_new_component(self, component: ClientEndpoint) -> Any:
        """Called on every installed instance when another component arrives."""
