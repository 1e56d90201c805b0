"""
Streamable HTTP transport endpoint (/mcp).

A POST without an mcp-session-id header starts a new session: a transport is
created, registered in the session registry and only then connected to the MCP
server. Requests carrying a session id are routed to the registered transport.
"""

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Optional

import anyio
import mcp.types as types
from anyio.abc import TaskStatus
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from core.session_registry import (
    SessionRegistry,
    SessionRoutingError,
    TransportFamily,
    get_session_registry,
)

logger = logging.getLogger(__name__)


class StreamableHTTPSessionTransport(StreamableHTTPServerTransport):
    """Server transport for one Streamable HTTP session."""

    async def close(self) -> None:
        await self.terminate()


def _jsonrpc_error_response(message: str, status_code: int) -> Response:
    error = types.JSONRPCError(
        jsonrpc="2.0",
        id="server-error",
        error=types.ErrorData(code=types.INVALID_REQUEST, message=message),
    )
    return Response(
        content=error.model_dump_json(by_alias=True, exclude_none=True),
        status_code=status_code,
        media_type="application/json",
    )


class StreamableHTTPEndpoint:
    """
    ASGI endpoint for /mcp.

    run() must be entered (from the application lifespan) before requests are
    served; new sessions run inside its task group.
    """

    def __init__(self, mcp_server, json_response: bool = False, registry: Optional[SessionRegistry] = None):
        self.mcp_server = mcp_server
        self.json_response = json_response
        self._registry = registry
        self._task_group = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry or get_session_registry()

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Context manager owning the task group that hosts session server runs.

        Yields:
            None
        """
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.debug("Streamable HTTP endpoint started")
            try:
                yield
            finally:
                logger.debug("Streamable HTTP endpoint shutting down")
                tg.cancel_scope.cancel()
                self._task_group = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.debug(f"Incoming request: {request.method} {request.url.path}")

        if session_id:
            try:
                transport = self.registry.get(session_id, TransportFamily.STREAMABLE_HTTP)
            except SessionRoutingError as e:
                response = _jsonrpc_error_response(f"Bad Request: {e.message}", e.status_code)
                await response(scope, receive, send)
                return
            await transport.handle_request(scope, receive, send)
            # An explicit DELETE ends the session now, not when its server task winds down
            if request.method == "DELETE" and transport.is_terminated:
                self.registry.remove(session_id, transport)
            return

        if request.method != "POST":
            response = _jsonrpc_error_response("Bad Request: Missing session ID", 400)
            await response(scope, receive, send)
            return

        await self._start_session(request, scope, receive, send)

    async def _start_session(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        registry = self.registry
        session_id = registry.new_session_id()
        transport = StreamableHTTPSessionTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
            event_store=None,
        )
        registry.register(
            session_id,
            TransportFamily.STREAMABLE_HTTP,
            transport,
            user_id=getattr(request.state, "user_id", None),
        )

        async def run_server(*, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
            try:
                async with transport.connect() as streams:
                    read_stream, write_stream = streams
                    task_status.started()
                    await self.mcp_server.run(
                        read_stream,
                        write_stream,
                        self.mcp_server.create_initialization_options(),
                        stateless=False,
                    )
            except Exception as e:
                logger.error(f"Session {session_id[:8]} crashed: {e}", exc_info=True)
            finally:
                registry.remove(session_id, transport)
                if not transport.is_terminated:
                    with anyio.CancelScope(shield=True):
                        await transport.terminate()

        await self._task_group.start(run_server)
        await transport.handle_request(scope, receive, send)
