"""End-to-end tests: ClientRuntime talking to a ComponentHost over LoopbackTransport."""

import asyncio

import pytest

from tandem import ComponentHost
from tandem.errors import RemoteCommandError

from .fixtures.sample_components import events_of


class TestClientBootstrap:
    @pytest.mark.asyncio
    async def test_bootstrap_installs_mirrors(self, client):
        await client.bootstrap(["Dashboard"])

        assert client.instances.names() == [
            "ComponentCommunications", "ComponentBootstrap", "Chart", "Legend", "Dashboard"]
        assert client.identity_token == client.transport.host.get_session("session-1").identity_token
        assert client.version == "1"

    @pytest.mark.asyncio
    async def test_client_hook_order(self, client):
        await client.bootstrap(["Legend"])

        assert events_of(client.shared_context) == [
            ("Chart", "setup"),
            ("Legend", "setup"),
            ("Chart", "init_client"),
            ("Legend", "init_client"),
        ]

    @pytest.mark.asyncio
    async def test_existing_components_hear_about_new_ones(self, client):
        await client.bootstrap(["Chart"])
        client.shared_context["events"].clear()

        await client.tools.request_components("Legend")

        assert events_of(client.shared_context) == [
            ("Legend", "setup"),
            ("Legend", "init_client"),
            ("Chart", "on_new_component:Legend"),
        ]

    @pytest.mark.asyncio
    async def test_ctor_arguments_and_payload_commands(self, client):
        await client.bootstrap(["Greeter"])

        assert client.instances.Greeter.ctor_args == ("hello", {"retries": 3})
        assert client.shared_context["greetings"] == ["welcome"]

    @pytest.mark.asyncio
    async def test_features_from_config(self, client_factory):
        client = client_factory(config={"features": ["Chart"]})
        await client.bootstrap()
        assert "Chart" in client.instances

    @pytest.mark.asyncio
    async def test_reload_tears_down_and_reinstalls(self, client):
        await client.bootstrap(["Chart"])
        first = client.instances.Chart

        await client.reload(["Chart"])

        assert client.instances.Chart is not first
        assert ("Chart", "teardown") in events_of(client.shared_context)


class TestHostCalls:
    @pytest.mark.asyncio
    async def test_call_returns_value(self, client):
        await client.bootstrap(["Calculator"])
        assert await client.instances.Calculator.host.add(2, 3) == 5

    @pytest.mark.asyncio
    async def test_calls_are_batched(self, client, transport):
        await client.bootstrap(["Calculator"])
        transport.sent.clear()

        first = client.instances.Calculator.host.accumulate(1)
        second = client.instances.Calculator.host.accumulate(2)
        await client.flush()

        assert first.result() == 1
        assert second.result() == 3
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_failures_are_per_call(self, client):
        await client.bootstrap(["Calculator"])
        calc = client.instances.Calculator.host

        ok = calc.add(1, 1)
        boom = calc.explode()
        rejected = calc.reject("nope")
        await client.flush()

        assert ok.result() == 2
        with pytest.raises(RemoteCommandError) as exc_info:
            boom.result()
        assert exc_info.value.err == "error.internal"
        with pytest.raises(RemoteCommandError, match="nope"):
            rejected.result()

    @pytest.mark.asyncio
    async def test_unknown_host_command_is_skipped(self, client):
        await client.bootstrap(["Calculator"])
        future = client.call_host("Calculator", "hidden", [])
        await client.flush()

        with pytest.raises(RemoteCommandError) as exc_info:
            future.result()
        assert exc_info.value.err == "error.skipped"

    @pytest.mark.asyncio
    async def test_host_commands_run_after_call(self, client):
        await client.bootstrap(["Chat"])
        future = client.instances.Chat.host.post("hello")
        await client.flush()

        assert future.result() == 5
        assert client.shared_context["shown"] == ["hello"]

    @pytest.mark.asyncio
    async def test_keep_open_response(self, client):
        await client.bootstrap(["Deferred"])
        future = client.instances.Deferred.host.hold(0.01)
        await client.drain()

        assert future.result() == "held"
        assert client.shared_context["notes"] == ["late"]

    @pytest.mark.asyncio
    async def test_unserializable_argument_raises_locally(self, client):
        await client.bootstrap(["Calculator"])
        with pytest.raises(TypeError):
            client.instances.Calculator.host.add(object(), 1)


class TestReplies:
    @pytest.mark.asyncio
    async def test_reply_routed_to_host_stub(self, client, host):
        await client.bootstrap(["Prompt"])
        session = host.get_session("session-1")

        future = session.instances.Prompt.client.ask("life")
        assert await session.tools.push_now() is True

        assert await asyncio.wait_for(future, 1) == "answer to life"

    @pytest.mark.asyncio
    async def test_reply_error(self, client, host):
        await client.bootstrap(["Prompt"])
        session = host.get_session("session-1")

        future = session.instances.Prompt.client.fail()
        await session.tools.push_now()

        with pytest.raises(RemoteCommandError, match="user cancelled"):
            await asyncio.wait_for(future, 1)

    @pytest.mark.asyncio
    async def test_unanswered_reply_times_out(self, registry):
        host = ComponentHost(registry, {"reply_timeout": 0.01})
        await host.bootstrap("s", ["Prompt"])
        session = host.get_session("s")

        future = session.instances.Prompt.client.ask("anyone?")
        reply_id = session.buffer.pending[-1]["replyId"]

        with pytest.raises(RemoteCommandError) as exc_info:
            await asyncio.wait_for(future, 1)
        assert exc_info.value.err == "error.operation.timeout"
        assert exc_info.value.command == "ask"
        assert session._pending_replies == {}
        # A late answer is ignored.
        assert session.resolve_reply(reply_id, "too late") is False

    @pytest.mark.asyncio
    async def test_reply_timeout_disabled(self, registry):
        host = ComponentHost(registry, {"reply_timeout": None})
        await host.bootstrap("s", ["Prompt"])
        session = host.get_session("s")

        future = session.instances.Prompt.client.ask("anyone?")
        reply_id = session.buffer.pending[-1]["replyId"]
        await asyncio.sleep(0.02)

        assert not future.done()
        assert session.resolve_reply(reply_id, "eventually") is True
        assert await future == "eventually"

    @pytest.mark.asyncio
    async def test_push_without_channel(self, registry):
        host = ComponentHost(registry)
        await host.bootstrap("s", ["Chat"])
        session = host.get_session("s")
        session.instances.Chat.client.show("queued")

        assert await session.tools.push_now() is False
        assert len(session.buffer) == 1

    @pytest.mark.asyncio
    async def test_push_with_empty_buffer(self, client, host):
        await client.bootstrap()
        assert await host.get_session("session-1").tools.push_now() is False


class TestComponentRequests:
    @pytest.mark.asyncio
    async def test_client_requests_components(self, client):
        await client.bootstrap()

        created = await client.tools.request_components("Dashboard")

        assert [i.definition.name for i in created] == ["Chart", "Legend", "Dashboard"]
        assert "Dashboard" in client.instances
        assert await client.tools.request_components("Chart") == []

    @pytest.mark.asyncio
    async def test_client_request_rejected_by_gate(self, client):
        await client.bootstrap()
        with pytest.raises(RemoteCommandError):
            await client.tools.request_components("Admin")
        assert "Admin" not in client.instances

    @pytest.mark.asyncio
    async def test_host_initiated_install(self, client):
        await client.bootstrap(["Account"])

        future = client.instances.Account.host.installChart()
        await client.drain()

        assert future.result() == ["Chart"]
        assert "Chart" in client.instances

    @pytest.mark.asyncio
    async def test_principal_change_rotates_token(self, client, host):
        await client.bootstrap(["Account"])
        before = client.identity_token

        future = client.instances.Account.host.login("admin")
        await client.drain()

        assert future.result() == "admin"

        assert client.identity_token != before
        assert client.identity_token == host.get_session("session-1").identity_token
        created = await client.tools.request_components("Admin")
        assert [i.definition.name for i in created] == ["Admin"]


class TestRecovery:
    @pytest.mark.asyncio
    async def test_version_change_requests_refresh(self, client, host_factory):
        await client.bootstrap(["Calculator"])
        host_factory({"protocol_version": "2"})
        refreshed = []
        client.on_refresh = refreshed.append

        future = client.instances.Calculator.host.add(1, 1)
        await client.drain()

        with pytest.raises(RemoteCommandError) as exc_info:
            future.result()
        assert exc_info.value.err == "error.notExecuted"
        assert client.refresh_requested
        assert refreshed == [client]

        await client.reload(["Calculator"])
        assert client.version == "2"
        assert await client.instances.Calculator.host.add(1, 1) == 2

    @pytest.mark.asyncio
    async def test_resync_after_host_restart(self, client, host_factory):
        await client.bootstrap(["Calculator"])
        old_token = client.identity_token
        restarted = host_factory()

        await client.resync()

        assert client.identity_token != old_token
        assert client.identity_token == restarted.get_session("session-1").identity_token
        assert await client.instances.Calculator.host.add(2, 2) == 4

    @pytest.mark.asyncio
    async def test_identity_rejection_fails_calls(self, client, host):
        await client.bootstrap(["Calculator"])
        client.identity_token = "forged"

        with pytest.raises(RemoteCommandError) as exc_info:
            await client.instances.Calculator.host.add(1, 1)
        assert exc_info.value.err == "error.identity"

    @pytest.mark.asyncio
    async def test_transport_failure_fails_batch(self, client, transport):
        await client.bootstrap(["Calculator"])
        transport.host = None

        with pytest.raises(RuntimeError):
            await client.instances.Calculator.host.add(1, 1)
