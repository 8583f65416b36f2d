"""Library components every session carries on both sides."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..shared import ClientEndpoint, HostEndpoint
from .definitions import ComponentRegistry, exposed

if TYPE_CHECKING:
    from .bootstrap import InstallPayload

logger = logging.getLogger(__name__)

COMMUNICATIONS = "ComponentCommunications"
BOOTSTRAP = "ComponentBootstrap"


class CommunicationsHost(HostEndpoint):
    @exposed("returnReply")
    def return_reply(self, reply_id: int, value: Any = None, err: str | None = None) -> None:
        self.tools.session.resolve_reply(reply_id, value, err)


class CommunicationsClient(ClientEndpoint):
    @exposed("requestRefresh")
    def request_refresh(self) -> None:
        self.context.runtime.handle_refresh()

    @exposed("updateIdentity")
    def update_identity(self, token: str) -> None:
        self.context.runtime.identity_token = token


class BootstrapHost(HostEndpoint):
    @exposed("requestComponents")
    async def request_components(self, *names: str) -> InstallPayload:
        return await self.tools.install_components(list(names))


class BootstrapClient(ClientEndpoint):
    @exposed("installComponents")
    async def install_components(self, payload: InstallPayload) -> None:
        await self.context.runtime.install(payload)


def install_builtin_libraries(registry: ComponentRegistry) -> None:
    """Register the built-in libraries unless *registry* already has them."""
    if COMMUNICATIONS not in registry:
        registry.library(COMMUNICATIONS, host=CommunicationsHost, client=CommunicationsClient)
    if BOOTSTRAP not in registry:
        registry.library(BOOTSTRAP, host=BootstrapHost, client=BootstrapClient)
