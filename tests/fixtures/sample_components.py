"""Sample components used across the test suite.

Every component records its lifecycle hooks into ``shared_context["events"]``
of the side it runs on, as ``(session_id, component, event)`` tuples, so tests
can assert hook order without global state.

Components:
    Calculator: host commands returning values, raising, and returning
        values that cannot cross the wire.
    Chart / Legend / Dashboard: include chain (Dashboard includes Legend and
        Chart, Legend includes Chart).
    Chat: host command that calls back into the client.
    Greeter: sends a command from ``on_bootstrap_ready`` and passes client
        constructor arguments.
    Prompt: client command answered through a reply id.
    Admin: rejected by its install gate unless the principal is "admin".
    Broken: setup always fails.
    Account: principal changes and host-initiated component requests.
    Deferred: holds its response open until a later flush.
"""

from __future__ import annotations

import asyncio
from typing import Any

from tandem import ClientEndpoint, ComponentRegistry, HostEndpoint, PeerError, SharedEndpoint, exposed


def record(endpoint: SharedEndpoint, event: str) -> None:
    endpoint.shared_context.setdefault("events", []).append(
        (endpoint.context.session_id, endpoint.definition.name, event)
    )


def events_of(shared_context: dict[str, Any], session_id: str | None = None) -> list[tuple[str, str]]:
    """Return ``(component, event)`` pairs, optionally for one session only."""
    return [
        (component, event)
        for sid, component, event in shared_context.get("events", [])
        if session_id is None or sid == session_id
    ]


class RecordingHost(HostEndpoint):
    def setup(self):
        record(self, "setup")

    def on_new_client(self):
        record(self, "on_new_client")

    def on_bootstrap_ready(self):
        record(self, "on_bootstrap_ready")

    def teardown(self):
        record(self, "teardown")


class RecordingClient(ClientEndpoint):
    def setup(self, *args):
        self.ctor_args = args
        record(self, "setup")

    def init_client(self):
        record(self, "init_client")

    def on_new_component(self, component):
        record(self, f"on_new_component:{component.definition.name}")

    def teardown(self):
        record(self, "teardown")


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

class CalculatorHost(RecordingHost):
    def setup(self):
        super().setup()
        self.total = 0

    @exposed
    def add(self, a, b):
        return a + b

    @exposed
    def accumulate(self, value):
        self.total += value
        return self.total

    @exposed
    def explode(self):
        raise RuntimeError("database password is hunter2")

    @exposed
    def reject(self, reason):
        raise PeerError(reason)

    @exposed("slowAdd")
    async def slow_add(self, a, b, delay):
        await asyncio.sleep(delay)
        return a + b

    @exposed
    def opaque(self):
        return object()

    def hidden(self):
        return "not exposed"


class CalculatorClient(RecordingClient):
    pass


# ---------------------------------------------------------------------------
# Chat / Greeter / Prompt
# ---------------------------------------------------------------------------

class ChatHost(RecordingHost):
    @exposed
    def post(self, text):
        self.client.show(text)
        return len(text)


class ChatClient(RecordingClient):
    @exposed
    def show(self, text):
        self.shared_context.setdefault("shown", []).append(text)


class GreeterHost(RecordingHost):
    def on_bootstrap_ready(self):
        super().on_bootstrap_ready()
        self.client.greet("welcome")

    def get_client_ctor_arguments(self):
        return ["hello", {"retries": 3}]


class GreeterClient(RecordingClient):
    @exposed
    def greet(self, text):
        self.shared_context.setdefault("greetings", []).append(text)


class PromptHost(RecordingHost):
    pass


class PromptClient(RecordingClient):
    @exposed(reply=True)
    def ask(self, question):
        return f"answer to {question}"

    @exposed(reply=True)
    def fail(self):
        raise PeerError("user cancelled")


# ---------------------------------------------------------------------------
# Gated / failing / account
# ---------------------------------------------------------------------------

class AdminHost(RecordingHost):
    @classmethod
    def may_install(cls, context):
        return context.principal == "admin"

    @exposed
    def secret(self):
        return 42


class BrokenHost(RecordingHost):
    def setup(self):
        raise RuntimeError("cannot connect")


class AccountHost(RecordingHost):
    @exposed
    def login(self, principal):
        self.tools.notify_principal_change(principal)
        return principal

    @exposed("installChart")
    async def install_chart(self):
        payload = await self.tools.request_components("Chart")
        return [d["name"] for d in payload["defs"]]


class DeferredHost(RecordingHost):
    def setup(self):
        super().setup()
        self.pending = None

    @exposed
    def hold(self, delay):
        self.tools.keep_open()

        async def release():
            await asyncio.sleep(delay)
            self.client.note("late")
            self.tools.flush()

        self.pending = asyncio.ensure_future(release())
        return "held"


class DeferredClient(RecordingClient):
    @exposed
    def note(self, text):
        self.shared_context.setdefault("notes", []).append(text)


class EchoBase(SharedEndpoint):
    @exposed
    def echo(self, value):
        return value


def build_registry() -> ComponentRegistry:
    registry = ComponentRegistry()
    registry.component("Calculator", host=CalculatorHost, client=CalculatorClient)
    registry.component("Chart", host=RecordingHost, client=RecordingClient)
    registry.component("Legend", host=RecordingHost, client=RecordingClient, includes=["Chart"])
    registry.component(
        "Dashboard", host=RecordingHost, client=RecordingClient, includes=["Legend", "Chart"])
    registry.component("Chat", host=ChatHost, client=ChatClient)
    registry.component("Greeter", host=GreeterHost, client=GreeterClient)
    registry.component("Prompt", host=PromptHost, client=PromptClient)
    registry.component("Admin", host=AdminHost, client=RecordingClient)
    registry.component("Broken", host=BrokenHost, client=RecordingClient)
    registry.component("Account", host=AccountHost, client=RecordingClient)
    registry.component("Deferred", host=DeferredHost, client=DeferredClient)
    registry.component("Echo", base=EchoBase)
    return registry
