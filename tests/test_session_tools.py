"""Tests for per-session Tools: logging, tracing and identity rotation."""

import logging

import pytest

from tandem._internal.tools import SessionLoggerAdapter, _DeduplicationFilter, format_call


class TestLogging:
    def test_session_prefix(self, caplog):
        adapter = SessionLoggerAdapter(logging.getLogger("tandem.session"), "abc")
        with caplog.at_level(logging.INFO, logger="tandem.session"):
            adapter.info("hello %s", "world")
        assert "[abc] hello world" in caplog.text

    def test_peer_warnings_are_deduplicated(self, caplog):
        adapter = SessionLoggerAdapter(logging.getLogger("tandem.session"), "abc")
        with caplog.at_level(logging.WARNING, logger="tandem.session"):
            for _ in range(3):
                adapter.peer_warning("bad command %s", "X.y")
            adapter.peer_warning("bad command %s", "X.z")

        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["[abc] bad command X.y", "[abc] bad command X.z"]

    def test_dedup_window_expires(self):
        dedup = _DeduplicationFilter(timeout_seconds=0)
        assert dedup.admit("same")
        assert dedup.admit("same")

    def test_format_call_truncates(self):
        assert format_call("A.b", [1, 2], 100) == "A.b([1, 2])"
        assert format_call("A.b", ["x" * 50], 10) == 'A.b(["xxxxxxxx...)'

    def test_format_call_handles_objects(self):
        rendered = format_call("A.b", [object()], 200)
        assert rendered.startswith('A.b(["<object object')


class TestTools:
    @pytest.mark.asyncio
    async def test_trace_logs_commands(self, host_factory, caplog):
        host = host_factory({"trace": {"enabled": True}})
        await host.bootstrap("s", ["Chat"])
        session = host.get_session("s")

        with caplog.at_level(logging.DEBUG, logger="tandem.session"):
            session.instances.Chat.client.show("hi")

        assert '[s] [TRACE] to client Chat.show(["hi"])' in caplog.text

    @pytest.mark.asyncio
    async def test_trace_off_by_default(self, host, caplog):
        await host.bootstrap("s", ["Chat"])
        with caplog.at_level(logging.DEBUG, logger="tandem.session"):
            host.get_session("s").instances.Chat.client.show("hi")
        assert "[TRACE]" not in caplog.text

    @pytest.mark.asyncio
    async def test_notify_principal_change(self, host):
        await host.bootstrap("s")
        session = host.get_session("s")
        before = session.identity_token

        token = session.tools.notify_principal_change("alice")

        assert token == session.identity_token != before
        assert session.context.principal == "alice"
        assert session.buffer.pending[-1] == {
            "comp": "ComponentCommunications", "cmd": "updateIdentity", "args": [token]}

    @pytest.mark.asyncio
    async def test_refresh_buffers_command(self, host):
        await host.bootstrap("s")
        session = host.get_session("s")
        session.tools.refresh()
        assert session.buffer.pending[-1]["cmd"] == "requestRefresh"

    @pytest.mark.asyncio
    async def test_unbalanced_flush_warns(self, host, caplog):
        await host.bootstrap("s")
        with caplog.at_level(logging.WARNING):
            host.get_session("s").tools.flush()
        assert "without a matching keep_open" in caplog.text
