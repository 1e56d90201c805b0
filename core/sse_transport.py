"""
Legacy SSE transport.

GET /sse opens a server-to-client event stream whose first event names the
endpoint for follow-up messages (/message?sessionId=<id>). Each stream is one
MCP session, registered in the session registry for as long as the client
stays connected.
"""

import logging
from typing import Any, Dict, Optional, Union

import anyio
import mcp.types as types
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from core.session_registry import (
    SessionNotFoundError,
    SessionRegistry,
    TransportFamily,
    TransportMismatchError,
    get_session_registry,
)

logger = logging.getLogger(__name__)

MESSAGE_PATH = "/message"

# request.state attributes set by the Bearer middleware and bound to the session
AUTH_STATE_KEYS = ("google_credentials", "user_id", "auth_method")


class SseSessionTransport:
    """
    Memory streams connecting one SSE client to one MCP server run.

    read_stream/write_stream are handed to the MCP server; POSTed messages go in
    through send_client_message() and server messages come out of event_source().
    """

    def __init__(self, session_id: str, message_path: str = MESSAGE_PATH, auth_state: Optional[Dict[str, Any]] = None):
        self.session_id = session_id
        self.endpoint = f"{message_path}?sessionId={session_id}"
        self.auth_state = dict(auth_state or {})

        self._read_stream_writer, self.read_stream = anyio.create_memory_object_stream[
            Union[SessionMessage, Exception]
        ](0)
        self.write_stream, self._write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        self.closed = False

    async def send_client_message(self, message: Union[SessionMessage, Exception]) -> None:
        await self._read_stream_writer.send(message)

    async def event_source(self):
        """Server-sent events for this session: the endpoint, then every server message."""
        yield {"event": "endpoint", "data": self.endpoint}
        async with self._write_stream_reader:
            async for session_message in self._write_stream_reader:
                logger.debug(f"Sending message via SSE to session {self.session_id}")
                yield {
                    "event": "message",
                    "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                }

    async def close(self) -> None:
        """Ends the MCP server run and the event stream."""
        if self.closed:
            return
        self.closed = True
        await self._read_stream_writer.aclose()
        await self.write_stream.aclose()


class SseEndpoint:
    """ASGI endpoint for GET /sse."""

    def __init__(self, mcp_server, message_path: str = MESSAGE_PATH, registry: Optional[SessionRegistry] = None):
        self.mcp_server = mcp_server
        self.message_path = message_path
        self._registry = registry

    @property
    def registry(self) -> SessionRegistry:
        return self._registry or get_session_registry()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        registry = self.registry

        auth_state = {key: getattr(request.state, key, None) for key in AUTH_STATE_KEYS}
        session_id = registry.new_session_id()
        transport = SseSessionTransport(session_id, self.message_path, auth_state)
        registry.register(session_id, TransportFamily.SSE, transport, user_id=auth_state.get("user_id"))
        logger.info(f"SSE connection established for {auth_state.get('user_id') or 'anonymous'} (session: {session_id[:8]})")

        async def run_server():
            try:
                await self.mcp_server.run(
                    transport.read_stream,
                    transport.write_stream,
                    self.mcp_server.create_initialization_options(),
                )
            except Exception as e:
                logger.error(f"MCP server error for SSE session {session_id[:8]}: {e}", exc_info=True)
            finally:
                await transport.close()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(run_server)
                response = EventSourceResponse(
                    transport.event_source(),
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
                )
                await response(scope, receive, send)
                tg.cancel_scope.cancel()
        finally:
            registry.remove(session_id, transport)
            await transport.close()
            logger.info(f"SSE connection closed (session: {session_id[:8]})")


def _routing_error_response(message: str, detail: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message, "message": detail}, status_code=status_code)


async def handle_post_message(request: Request) -> Response:
    """POST /message?sessionId=<id>: deliver a client message to its SSE session."""
    session_id = request.query_params.get("sessionId") or request.query_params.get("session_id")
    if not session_id:
        return _routing_error_response("Bad Request", "Missing sessionId query parameter", 400)

    try:
        transport = get_session_registry().get(session_id, TransportFamily.SSE)
    except SessionNotFoundError:
        return _routing_error_response("Session not found", "Invalid or expired sessionId", 404)
    except TransportMismatchError as e:
        return _routing_error_response("Bad Request", e.message, 400)

    body = await request.body()
    try:
        message = types.JSONRPCMessage.model_validate_json(body)
    except ValidationError as err:
        logger.warning(f"Failed to parse message for SSE session {session_id[:8]}: {err}")
        return _routing_error_response("Bad Request", "Could not parse message", 400)

    for key, value in transport.auth_state.items():
        setattr(request.state, key, value)

    try:
        await transport.send_client_message(
            SessionMessage(message, metadata=ServerMessageMetadata(request_context=request))
        )
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        get_session_registry().remove(session_id, transport)
        return _routing_error_response("Session not found", "Session was closed", 404)

    return Response("Accepted", status_code=202)
