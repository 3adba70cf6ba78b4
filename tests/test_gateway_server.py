"""
GatewayServer tests: handshake, method routing and agent event forwarding.
"""
import json

import pytest

from agent.runner import ConversationRunner
from gateway.agent_runner import StubAgentRunner
from gateway.protocol import PROTOCOL_VERSION
from gateway.server import GatewayServer

from conftest import EchoRunner, FailingRunner, FakeWebSocket


def req(method, params=None, request_id="1"):
    return json.dumps({"type": "req", "id": request_id, "method": method, "params": params or {}})


async def open_client(server, token=None):
    ws = FakeWebSocket()
    conn = await server.open_connection(ws)
    params = {"auth": {"token": token}} if token else {}
    await server.handle_message(conn.connection_id, req("connect", params, "c"))
    return ws, conn


async def call(server, ws, conn, method, params=None, request_id="r"):
    before = len(ws.sent)
    await server.handle_message(conn.connection_id, req(method, params, request_id))
    responses = [f for f in ws.frames()[before:] if f["type"] == "res"]
    assert len(responses) == 1
    return responses[0]


@pytest.fixture
def server(store):
    return GatewayServer(store, EchoRunner(store))


class TestHandshake:

    @pytest.mark.asyncio
    async def test_connect_then_presence(self, server):
        ws, conn = await open_client(server)
        res, presence = ws.frames()
        assert res["id"] == "c" and res["ok"]
        assert res["payload"]["hello"] == "ok"
        assert res["payload"]["protocol"] == PROTOCOL_VERSION
        assert res["payload"]["health"] == {"status": "ok", "clients": 1}
        assert presence["event"] == "presence"
        assert presence["payload"] == {"clients": 1}

    @pytest.mark.asyncio
    async def test_second_client_triggers_presence_for_all(self, server):
        first, _ = await open_client(server)
        second, _ = await open_client(server)
        assert first.events("presence")[-1]["payload"] == {"clients": 2}
        assert second.events("presence")[-1]["payload"] == {"clients": 2}

    @pytest.mark.asyncio
    async def test_disconnect_broadcasts_presence(self, server):
        first, _ = await open_client(server)
        second, conn2 = await open_client(server)
        await server.close_connection(conn2.connection_id)
        assert first.events("presence")[-1]["payload"] == {"clients": 1}
        assert server.connection_manager.count() == 1


class TestAuthGate:

    @pytest.mark.asyncio
    async def test_request_before_connect_is_rejected(self, server):
        ws = FakeWebSocket()
        conn = await server.open_connection(ws)
        res = await call(server, ws, conn, "health")
        assert res == {"type": "res", "id": "r", "ok": False, "error": "Not authenticated"}

    @pytest.mark.asyncio
    async def test_invalid_token(self, store):
        server = GatewayServer(store, EchoRunner(store), token="secret")
        ws, conn = await open_client(server, token="wrong")
        [res] = ws.frames()
        assert res["error"] == "Invalid token"
        assert not conn.is_authenticated
        assert (await call(server, ws, conn, "health"))["error"] == "Not authenticated"

    @pytest.mark.asyncio
    async def test_valid_token(self, store):
        server = GatewayServer(store, EchoRunner(store), token="secret")
        ws, conn = await open_client(server, token="secret")
        assert ws.responses()[0]["ok"]
        assert (await call(server, ws, conn, "health"))["ok"]

    @pytest.mark.asyncio
    async def test_no_token_configured_accepts_anyone(self, server):
        ws, conn = await open_client(server, token="whatever")
        assert ws.responses()[0]["ok"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, params", [
        ("send", {"sessionId": "s1", "message": "sneaky"}),
        ("sessions.reset", {"sessionId": "s1"}),
        ("sessions.delete", {"sessionId": "s1"}),
        ("pairing.approve", {"channel": "feishu", "userId": "ou_1"}),
        ("agent", {"message": "hi", "sessionId": "s1"}),
    ])
    async def test_mutations_before_connect_leave_store_untouched(self, server, store, method, params):
        store.add_message("s1", "user", "hello")
        store.create_pairing("feishu", "ou_1")
        sessions_before = [s.to_wire() for s in store.list()]
        pairing_before = [p.to_wire() for p in store.list_pairing()]
        updated_at = store.get("s1").updated_at

        ws = FakeWebSocket()
        conn = await server.open_connection(ws)
        res = await call(server, ws, conn, method, params)

        assert res == {"type": "res", "id": "r", "ok": False, "error": "Not authenticated"}
        assert ws.events() == []
        assert [s.to_wire() for s in store.list()] == sessions_before
        assert [p.to_wire() for p in store.list_pairing()] == pairing_before
        assert store.get("s1").updated_at == updated_at
        assert len(store.get("s1").messages) == 1
        assert not store.is_approved("feishu", "ou_1")
        assert not server._runs


class TestRouting:

    @pytest.mark.asyncio
    async def test_invalid_json(self, server):
        ws, conn = await open_client(server)
        before = len(ws.sent)
        await server.handle_message(conn.connection_id, "{oops")
        [res] = ws.frames()[before:]
        assert res == {"type": "res", "id": "?", "ok": False, "error": "Invalid JSON"}

    @pytest.mark.asyncio
    async def test_unknown_method(self, server):
        ws, conn = await open_client(server)
        res = await call(server, ws, conn, "frobnicate")
        assert res["error"] == "Unknown method: frobnicate"

    @pytest.mark.asyncio
    async def test_invalid_params(self, server):
        ws, conn = await open_client(server)
        res = await call(server, ws, conn, "sessions.get", {})
        assert not res["ok"]
        assert res["error"].startswith("Invalid params for sessions.get")

    @pytest.mark.asyncio
    async def test_null_params_keep_request_id(self, server):
        ws = FakeWebSocket()
        conn = await server.open_connection(ws)
        frame = {"type": "req", "id": "c1", "method": "connect", "params": None}
        await server.handle_message(conn.connection_id, json.dumps(frame))
        res = ws.responses()[0]
        assert res["id"] == "c1" and res["ok"]

        frame = {"type": "req", "id": "h1", "method": "health", "params": None}
        await server.handle_message(conn.connection_id, json.dumps(frame))
        res = ws.responses()[-1]
        assert res["id"] == "h1" and res["ok"]

    @pytest.mark.asyncio
    async def test_non_object_params_are_invalid_params(self, server):
        ws, conn = await open_client(server)
        frame = {"type": "req", "id": "g1", "method": "sessions.get", "params": ["s1"]}
        await server.handle_message(conn.connection_id, json.dumps(frame))
        res = ws.responses()[-1]
        assert res["id"] == "g1" and not res["ok"]
        assert res["error"].startswith("Invalid params for sessions.get")

    @pytest.mark.asyncio
    async def test_non_request_frames_are_ignored(self, server):
        ws, conn = await open_client(server)
        before = len(ws.sent)
        await server.handle_message(conn.connection_id, json.dumps({"type": "res", "id": "x", "ok": True}))
        assert len(ws.sent) == before

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_internal_error(self, server, monkeypatch):
        ws, conn = await open_client(server)

        def broken():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(server.sessions, "list", broken)
        res = await call(server, ws, conn, "sessions.list")
        assert res["error"] == "Internal error: disk on fire"

    @pytest.mark.asyncio
    async def test_health(self, server):
        ws, conn = await open_client(server)
        res = await call(server, ws, conn, "health")
        assert res["payload"]["status"] == "ok"
        assert res["payload"]["clients"] == 1
        assert res["payload"]["sessions"] == 0


class TestSessionMethods:

    @pytest.mark.asyncio
    async def test_send_appends_without_agent(self, server, store):
        ws, conn = await open_client(server)
        res = await call(server, ws, conn, "send", {"sessionId": "s1", "message": "note"})
        assert res["ok"] and res["payload"]["messageId"]
        assert [m.content for m in store.get("s1").messages] == ["note"]
        assert ws.events("agent") == []

    @pytest.mark.asyncio
    async def test_list_get_history(self, server, store):
        for i in range(3):
            store.add_message("s1", "user", f"m{i}")
        ws, conn = await open_client(server)

        listing = await call(server, ws, conn, "sessions.list")
        assert listing["payload"]["sessions"][0]["messageCount"] == 3

        got = await call(server, ws, conn, "sessions.get", {"sessionId": "s1"})
        assert len(got["payload"]["session"]["messages"]) == 3

        history = await call(server, ws, conn, "sessions.history", {"sessionId": "s1", "limit": 2})
        assert [m["content"] for m in history["payload"]["messages"]] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_history_missing_session(self, server):
        ws, conn = await open_client(server)
        res = await call(server, ws, conn, "sessions.history", {"sessionId": "nope"})
        assert res == {"type": "res", "id": "r", "ok": False, "error": "Session not found"}

    @pytest.mark.asyncio
    async def test_reset_and_delete(self, server, store):
        store.add_message("s1", "user", "x")
        ws, conn = await open_client(server)
        assert (await call(server, ws, conn, "sessions.reset", {"sessionId": "s1"}))["ok"]
        assert store.get("s1").messages == []
        assert (await call(server, ws, conn, "sessions.delete", {"sessionId": "s1"}))["ok"]
        missing = await call(server, ws, conn, "sessions.delete", {"sessionId": "s1"})
        assert missing["error"] == "Session not found"

    @pytest.mark.asyncio
    async def test_pairing_methods(self, server, store):
        entry = store.create_pairing("feishu", "ou_1")
        ws, conn = await open_client(server)

        listing = await call(server, ws, conn, "pairing.list")
        assert listing["payload"]["entries"][0]["pairingCode"] == entry.pairing_code

        approved = await call(server, ws, conn, "pairing.approve", {"channel": "feishu", "userId": "ou_1"})
        assert approved["ok"] and approved["payload"] == {"ok": True}
        assert store.is_approved("feishu", "ou_1")

        unknown = await call(server, ws, conn, "pairing.approve", {"channel": "feishu", "userId": "nobody"})
        assert not unknown["ok"]
        assert unknown["error"] == "Pairing entry not found"


class TestAgentMethod:

    @pytest.mark.asyncio
    async def test_hello_hi_with_usage(self, store, text_backend):
        runner = ConversationRunner(store, text_backend, model="anthropic/claude-test")
        server = GatewayServer(store, runner)
        ws, conn = await open_client(server)

        res = await call(server, ws, conn, "agent", {"message": "hello", "sessionId": "s1"})
        await server.drain()

        assert res["payload"]["status"] == "accepted"
        run_id = res["payload"]["runId"]

        frames = ws.frames()
        res_index = frames.index(res)
        agent_events = ws.events("agent")
        assert all(frames.index(e) > res_index for e in agent_events)

        payloads = [e["payload"] for e in agent_events]
        assert payloads == [
            {"runId": run_id, "type": "delta", "delta": "hi"},
            {
                "runId": run_id,
                "type": "done",
                "usage": {"inputTokens": 5, "outputTokens": 1},
                "stopReason": "complete",
            },
        ]
        assert [(m.role.value, m.content) for m in store.get("s1").messages] == [
            ("user", "hello"),
            ("assistant", "hi"),
        ]
        assert text_backend.calls[0]["model"] == "claude-test"

    @pytest.mark.asyncio
    async def test_event_seq_is_monotonic(self, server):
        ws, conn = await open_client(server)
        for i in range(3):
            await call(server, ws, conn, "agent", {"message": f"m{i}"}, request_id=f"a{i}")
        await server.drain()
        seqs = [e["seq"] for e in ws.events()]
        assert len(seqs) == 1 + 3 * 2
        assert all(a < b for a, b in zip(seqs, seqs[1:]))

    @pytest.mark.asyncio
    async def test_runner_crash_becomes_error_event(self, store):
        server = GatewayServer(store, FailingRunner("kaboom"))
        ws, conn = await open_client(server)
        await call(server, ws, conn, "agent", {"message": "hi"})
        await server.drain()
        [event] = ws.events("agent")
        assert event["payload"]["type"] == "error"
        assert event["payload"]["error"] == "kaboom"
        assert event["payload"]["stopReason"] == "error"

    @pytest.mark.asyncio
    async def test_stub_runner(self, store):
        server = GatewayServer(store, StubAgentRunner(store))
        ws, conn = await open_client(server)
        await call(server, ws, conn, "agent", {"message": "hi", "sessionId": "s"})
        await server.drain()
        types = [e["payload"]["type"] for e in ws.events("agent")]
        assert types == ["delta", "done"]
        assert "No model backend" in store.get("s").messages[-1].content

    @pytest.mark.asyncio
    async def test_events_to_closed_connection_are_dropped(self, server):
        ws, conn = await open_client(server)
        await call(server, ws, conn, "agent", {"message": "hi"})
        ws.close()
        sent = len(ws.sent)
        await server.drain()
        assert len(ws.sent) == sent


class TestHttpBridge:

    @pytest.mark.asyncio
    async def test_http_request_is_pre_authenticated(self, server):
        res = await server.handle_http_request("health")
        assert res.ok
        assert res.payload["clients"] == 0

    @pytest.mark.asyncio
    async def test_lifecycle(self, server):
        await server.start()
        assert server.is_running
        await server.stop()
        assert not server.is_running
