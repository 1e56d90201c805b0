# core/context.py
import contextvars
import logging
from typing import Optional

from fastmcp.server.dependencies import get_http_request
from google.oauth2.credentials import Credentials

logger = logging.getLogger(__name__)

# Credentials resolved once at startup for the stdio transport.
_stdio_credentials = contextvars.ContextVar(
    "stdio_credentials", default=None
)

# User id the stdio credentials belong to.
_stdio_user_id = contextvars.ContextVar(
    "stdio_user_id", default=None
)


class DriveAuthenticationError(Exception):
    """No Google credentials are available for the current request."""

    pass


def set_stdio_credentials(credentials: Optional[Credentials], user_id: Optional[str] = None):
    """
    Set or clear the pre-provisioned credentials used when there is no HTTP request.
    This is called by main.py before the stdio server starts.
    """
    _stdio_credentials.set(credentials)
    _stdio_user_id.set(user_id)


def _current_http_request():
    try:
        return get_http_request()
    except RuntimeError:
        return None


def get_request_credentials() -> Credentials:
    """
    Credentials for the MCP request being handled.

    Over HTTP these were attached to the request by the Bearer middleware (or
    bound to the SSE session when it opened); over stdio they are the startup
    credentials.

    Raises:
        DriveAuthenticationError: If no credentials are available
    """
    request = _current_http_request()
    if request is not None:
        credentials = getattr(request.state, "google_credentials", None)
        if credentials is None:
            raise DriveAuthenticationError(
                "This request carries no Google credentials. Authenticate with a Bearer token "
                "obtained from /oauth/authorize."
            )
        return credentials

    credentials = _stdio_credentials.get()
    if credentials is None:
        raise DriveAuthenticationError(
            "No Google Drive credentials configured. Run with --auth-user to authorize a user."
        )
    return credentials


def get_request_user_id() -> Optional[str]:
    """The authenticated subject for the current request, if known."""
    request = _current_http_request()
    if request is not None:
        return getattr(request.state, "user_id", None)
    return _stdio_user_id.get()
