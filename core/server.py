import contextlib
import logging
from importlib import metadata
from typing import Optional

from fastapi.responses import JSONResponse
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.routing import Route

from fastmcp import FastMCP

from auth.bearer_auth_middleware import BearerAuthMiddleware
from auth.credential_store import get_credential_store
from auth.oauth_config import (
    AUTHORIZATION_SERVER_METADATA_PATH,
    CALLBACK_PATH,
    PROTECTED_RESOURCE_METADATA_PATH,
    get_oauth_config,
    get_transport_mode,
    set_transport_mode as _set_transport_mode,
)
from auth.oauth_proxy_handlers import (
    handle_oauth_authorization_server,
    handle_oauth_authorize,
    handle_oauth_callback,
    handle_oauth_protected_resource,
    handle_oauth_register,
    handle_oauth_token,
)
from auth.oauth_types import AuthPolicy
from core.session_registry import get_session_registry
from core.sse_transport import MESSAGE_PATH, SseEndpoint, handle_post_message
from core.streamable_http import StreamableHTTPEndpoint

logger = logging.getLogger(__name__)

SERVICE_NAME = "gdrive-mcp"

server = FastMCP(name="gdrive")


def set_transport_mode(mode: str):
    """Sets the transport mode for the server."""
    _set_transport_mode(mode)
    logger.info(f"Transport: {mode}")


def get_version() -> str:
    try:
        return metadata.version(SERVICE_NAME)
    except metadata.PackageNotFoundError:
        return "dev"


async def health_check(request: Request):
    return JSONResponse({
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": get_version(),
        "transport": get_transport_mode(),
        "active_sessions": len(get_session_registry()),
        "auth_policy": get_oauth_config().auth_policy.value,
    })


async def list_users(request: Request):
    """Users with stored pre-auth credentials."""
    users = get_credential_store().list_users()
    return JSONResponse({"users": users, "default_user": get_oauth_config().default_user})


def build_http_app(policy: Optional[AuthPolicy] = None, mcp_server: Optional[FastMCP] = None) -> Starlette:
    """
    Assemble the HTTP application: OAuth proxy, discovery metadata, both MCP
    transports, and the CORS and Bearer middleware in front of them.

    The lifespan runs the Streamable HTTP task group and closes every registered
    session on shutdown.
    """
    config = get_oauth_config()
    policy = policy or config.auth_policy
    low_level_server = (mcp_server or server)._mcp_server

    sse_endpoint = SseEndpoint(low_level_server, message_path=MESSAGE_PATH)
    streamable_endpoint = StreamableHTTPEndpoint(low_level_server)

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/oauth/authorize", handle_oauth_authorize, methods=["GET"]),
        Route(CALLBACK_PATH, handle_oauth_callback, methods=["GET"]),
        Route("/oauth/token", handle_oauth_token, methods=["POST"]),
        Route("/oauth/register", handle_oauth_register, methods=["POST"]),
        Route(PROTECTED_RESOURCE_METADATA_PATH, handle_oauth_protected_resource, methods=["GET"]),
        Route(AUTHORIZATION_SERVER_METADATA_PATH, handle_oauth_authorization_server, methods=["GET"]),
        Route("/sse", sse_endpoint, methods=["GET"]),
        Route(MESSAGE_PATH, handle_post_message, methods=["POST"]),
        Route("/mcp", streamable_endpoint, methods=["GET", "POST", "DELETE"]),
    ]
    if policy is not AuthPolicy.REQUIRED:
        routes.append(Route("/users", list_users, methods=["GET"]))

    # First entry is the outermost layer; CORS must answer preflights before auth
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.get_allowed_origins(),
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["WWW-Authenticate", "Link", "mcp-session-id"],
        ),
        Middleware(BearerAuthMiddleware, policy=policy),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(f"HTTP transports ready (auth policy: {policy.value})")
        try:
            async with streamable_endpoint.run():
                yield
        finally:
            closed = await get_session_registry().close_all()
            logger.info(f"Shutdown complete, {closed} sessions closed")

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.streamable_endpoint = streamable_endpoint
    return app
