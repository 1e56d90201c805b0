"""
OAuth callback response templates.

HTML pages rendered on the browser legs of the proxy flow (/oauth/authorize and
/oauth/callback), where the user-agent is a person rather than an MCP client.
"""

from html import escape
from typing import Optional

from fastapi.responses import HTMLResponse

_PAGE_STYLE = (
    "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; "
    "max-width: 600px; margin: 40px auto; padding: 20px; text-align: center;"
)


def create_error_response(error_message: str, status_code: int = 400) -> HTMLResponse:
    """
    Create a standardized error response for OAuth failures.

    Args:
        error_message: The error message to display
        status_code: HTTP status code (default 400)

    Returns:
        HTMLResponse with error page
    """
    content = f"""
        <html>
        <head><title>Authentication Error</title></head>
        <body style="{_PAGE_STYLE}">
            <h2 style="color: #d32f2f;">Authentication Error</h2>
            <p>{escape(error_message)}</p>
            <p>Please ensure you grant the requested permissions. You can close this window and try again.</p>
        </body>
        </html>
    """
    return HTMLResponse(content=content, status_code=status_code, headers={"Cache-Control": "no-store"})


def create_token_display_response(
    access_token: str,
    server_url: str,
    refresh_token: Optional[str] = None,
    expires_in: Optional[int] = None,
) -> HTMLResponse:
    """
    Page shown at the end of a manual flow, where no client redirect URI was given.

    Displays the raw Google access token so a person can paste it into an MCP
    client for testing.
    """
    refresh_block = ""
    if refresh_token:
        refresh_block = f"""
            <h3>Refresh token</h3>
            <pre style="white-space: pre-wrap; word-break: break-all; background: #f5f5f5; padding: 12px;">{escape(refresh_token)}</pre>
        """
    expiry_line = f"<p>The access token expires in {expires_in} seconds.</p>" if expires_in is not None else ""
    server = escape(server_url)

    content = f"""
        <html>
        <head><title>Authentication Successful</title></head>
        <body style="{_PAGE_STYLE}">
            <h2 style="color: #2e7d32;">Authentication Successful</h2>
            <p>Use this access token as a Bearer token when connecting your MCP client.</p>
            <h3>Access token</h3>
            <pre style="white-space: pre-wrap; word-break: break-all; background: #f5f5f5; padding: 12px;">{escape(access_token)}</pre>
            {expiry_line}
            {refresh_block}
            <h3>Connecting</h3>
            <p>Streamable HTTP endpoint: <code>{server}/mcp</code></p>
            <p>SSE endpoint: <code>{server}/sse</code></p>
            <p>Send the header <code>Authorization: Bearer &lt;access token&gt;</code> with every request.</p>
        </body>
        </html>
    """
    return HTMLResponse(content=content, status_code=200, headers={"Cache-Control": "no-store"})


def create_server_error_response(error_detail: str) -> HTMLResponse:
    """
    Create a standardized server error response for OAuth processing failures.

    Args:
        error_detail: The detailed error message

    Returns:
        HTMLResponse with server error page
    """
    content = f"""
        <html>
        <head><title>Authentication Processing Error</title></head>
        <body style="{_PAGE_STYLE}">
            <h2 style="color: #d32f2f;">Authentication Processing Error</h2>
            <p>An unexpected error occurred while processing your authentication: {escape(error_detail)}</p>
            <p>Please try again. You can close this window.</p>
        </body>
        </html>
    """
    return HTMLResponse(content=content, status_code=500, headers={"Cache-Control": "no-store"})
