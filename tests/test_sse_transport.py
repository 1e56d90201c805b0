"""
Tests for the legacy SSE transport: GET /sse streams and POST /message routing.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anyio
import pytest
import sse_starlette.sse as sse_module
from mcp.shared.message import SessionMessage
from starlette.requests import Request

from core.session_registry import TransportFamily, get_session_registry
from core.sse_transport import SseEndpoint, SseSessionTransport, handle_post_message

PING = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


def _fake_sse_transport(auth_state=None):
    return SimpleNamespace(auth_state=auth_state or {}, send_client_message=AsyncMock(), close=AsyncMock())


class EchoServer:
    """Stands in for the MCP server: echoes every client message back."""

    def create_initialization_options(self):
        return None

    async def run(self, read_stream, write_stream, initialization_options):
        async for message in read_stream:
            await write_stream.send(SessionMessage(message.message))


class TestPostMessage:
    def test_missing_session_id(self, client):
        response = client.post("/message", json=PING)
        assert response.status_code == 400
        assert response.json() == {"error": "Bad Request", "message": "Missing sessionId query parameter"}

    def test_unknown_session(self, client):
        response = client.post("/message?sessionId=does-not-exist", json=PING)
        assert response.status_code == 404
        assert response.json()["error"] == "Session not found"

    def test_streamable_session_addressed_as_sse(self, client):
        get_session_registry().register("streamable-1", TransportFamily.STREAMABLE_HTTP, _fake_sse_transport())

        response = client.post("/message?sessionId=streamable-1", json=PING)
        assert response.status_code == 400
        assert "different transport protocol" in response.json()["message"]

    def test_message_is_delivered_with_session_credentials(self, client):
        transport = _fake_sse_transport({"google_credentials": "creds", "user_id": "user@example.com", "auth_method": "oauth"})
        get_session_registry().register("sse-1", TransportFamily.SSE, transport)

        response = client.post("/message?sessionId=sse-1", json=PING)

        assert response.status_code == 202
        transport.send_client_message.assert_awaited_once()
        session_message = transport.send_client_message.await_args.args[0]
        assert session_message.message.root.method == "ping"
        request = session_message.metadata.request_context
        assert request.state.user_id == "user@example.com"
        assert request.state.google_credentials == "creds"

    def test_unparseable_message(self, client):
        transport = _fake_sse_transport()
        get_session_registry().register("sse-1", TransportFamily.SSE, transport)

        response = client.post("/message?sessionId=sse-1", content=b"not json")
        assert response.status_code == 400
        transport.send_client_message.assert_not_awaited()

    def test_messages_only_reach_their_own_session(self, client):
        first = _fake_sse_transport({"user_id": "a@example.com"})
        second = _fake_sse_transport({"user_id": "b@example.com"})
        get_session_registry().register("sse-A", TransportFamily.SSE, first)
        get_session_registry().register("sse-B", TransportFamily.SSE, second)

        response = client.post("/message?sessionId=sse-A", json=PING)

        assert response.status_code == 202
        first.send_client_message.assert_awaited_once()
        second.send_client_message.assert_not_awaited()
        request = first.send_client_message.await_args.args[0].metadata.request_context
        assert request.state.user_id == "a@example.com"

        assert client.post("/message?sessionId=sse-C", json=PING).status_code == 404
        first.send_client_message.assert_awaited_once()
        second.send_client_message.assert_not_awaited()

    def test_closed_session(self, client):
        transport = _fake_sse_transport()
        transport.send_client_message.side_effect = anyio.ClosedResourceError
        get_session_registry().register("sse-1", TransportFamily.SSE, transport)

        response = client.post("/message?sessionId=sse-1", json=PING)
        assert response.status_code == 404
        assert "sse-1" not in get_session_registry()


class TestSessionTransport:
    @pytest.mark.asyncio
    async def test_first_event_names_message_endpoint(self):
        transport = SseSessionTransport("abc123")
        events = transport.event_source()

        first = await events.__anext__()
        assert first == {"event": "endpoint", "data": "/message?sessionId=abc123"}

        await transport.close()
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        transport = SseSessionTransport("abc123")
        await transport.close()
        await transport.close()
        assert transport.closed


class TestSseEndpoint:
    @pytest.fixture(autouse=True)
    def reset_sse_app_status(self, monkeypatch):
        # sse-starlette keeps a process-wide exit event bound to the first event loop
        if hasattr(sse_module, "AppStatus"):
            monkeypatch.setattr(sse_module.AppStatus, "should_exit_event", None, raising=False)

    @pytest.mark.asyncio
    async def test_stream_lifecycle(self):
        registry = get_session_registry()
        endpoint = SseEndpoint(EchoServer())
        sent = []
        disconnected = anyio.Event()

        async def receive():
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        def body_text():
            return "".join(
                m.get("body", b"").decode() for m in sent if m["type"] == "http.response.body"
            )

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": "GET",
            "path": "/sse",
            "headers": [],
            "query_string": b"",
            "state": {"user_id": "user@example.com", "google_credentials": "creds", "auth_method": "oauth"},
        }

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, scope, receive, send)

            with anyio.fail_after(5):
                while "event: endpoint" not in body_text():
                    await anyio.sleep(0.01)

            [entry] = registry.list_sessions()
            assert entry.family is TransportFamily.SSE
            assert entry.user_id == "user@example.com"
            assert f"/message?sessionId={entry.session_id}" in body_text()

            body = json.dumps(PING).encode()
            post_scope = {
                "type": "http",
                "method": "POST",
                "path": "/message",
                "headers": [(b"content-type", b"application/json")],
                "query_string": f"sessionId={entry.session_id}".encode(),
            }

            async def post_receive():
                return {"type": "http.request", "body": body, "more_body": False}

            response = await handle_post_message(Request(post_scope, post_receive))
            assert response.status_code == 202

            with anyio.fail_after(5):
                while "event: message" not in body_text():
                    await anyio.sleep(0.01)
            assert '"method":"ping"' in body_text()

            disconnected.set()

        assert len(registry) == 0
