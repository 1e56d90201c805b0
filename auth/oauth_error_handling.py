"""
OAuth Error Handling and Validation

This module provides the OAuth error taxonomy shared by the proxy endpoints and
the Bearer middleware, the JSON error responses (including the RFC 9728
discovery challenge), and input validation for client registration.
"""

import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse

from starlette.requests import Request
from starlette.responses import JSONResponse

from auth.oauth_config import is_development_mode
from auth.scopes import get_scope_string

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """Base exception for OAuth-related errors."""

    def __init__(self, error_code: str, description: str, status_code: int = 400):
        self.error_code = error_code
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error_code}: {description}")


class OAuthValidationError(OAuthError):
    """Exception for malformed OAuth requests."""

    def __init__(self, description: str, field: Optional[str] = None):
        if field:
            description = f"Invalid {field}: {description}"
        super().__init__("invalid_request", description, 400)


class InvalidGrantError(OAuthError):
    """Unknown, expired or replayed authorization code or refresh token."""

    def __init__(self, description: str):
        super().__init__("invalid_grant", description, 400)


class UnsupportedGrantTypeError(OAuthError):
    def __init__(self, grant_type: str):
        super().__init__("unsupported_grant_type", f"Grant type '{grant_type}' is not supported", 400)


class UnsupportedResponseTypeError(OAuthError):
    def __init__(self, response_type: str):
        super().__init__(
            "unsupported_response_type",
            f"Response type '{response_type}' is not supported; only 'code' is allowed",
            400,
        )


class InvalidTokenError(OAuthError):
    """Missing, malformed or rejected Bearer token."""

    def __init__(self, description: str):
        super().__init__("invalid_token", description, 401)


class InsufficientScopeError(OAuthError):
    """Valid token that does not grant any of the required scopes."""

    def __init__(self, description: str):
        super().__init__("insufficient_scope", description, 403)


class OAuthConfigurationError(OAuthError):
    """Exception for server-side failures, including unreachable upstreams."""

    def __init__(self, description: str):
        super().__init__("server_error", description, 500)


def describe_internal_error(error: Exception, fallback: str = "Internal server error") -> str:
    """Exception detail in development mode, a generic message otherwise."""
    if is_development_mode():
        return f"{fallback}: {error}"
    return fallback


def create_oauth_error_response(error: OAuthError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """
    Create a standardized OAuth error response.

    Args:
        error: The OAuth error to convert to a response
        headers: Extra headers, e.g. the Bearer discovery challenge

    Returns:
        JSONResponse with standardized error format
    """
    response_headers = {
        "Cache-Control": "no-store",
    }
    if headers:
        response_headers.update(headers)

    content = {
        "error": error.error_code,
        "error_description": error.description,
    }

    logger.warning(f"OAuth error response: {error.error_code} - {error.description}")

    return JSONResponse(
        status_code=error.status_code,
        content=content,
        headers=response_headers,
    )


def get_bearer_challenge_headers(resource_metadata_url: str, error: Optional[OAuthError] = None) -> Dict[str, str]:
    """
    Headers pointing a client at the protected resource metadata (RFC 9728).

    A 401 without these breaks client auto-discovery, so every invalid_token
    response carries them. insufficient_scope additionally names the error
    and the scopes that would satisfy the request.
    """
    challenge = f'Bearer resource_metadata="{resource_metadata_url}"'
    if isinstance(error, InsufficientScopeError):
        challenge = (
            f'Bearer error="insufficient_scope", scope="{get_scope_string()}", '
            f'resource_metadata="{resource_metadata_url}"'
        )
    return {
        "WWW-Authenticate": challenge,
        "Link": f'<{resource_metadata_url}>; rel="oauth-protected-resource"',
    }


def create_bearer_challenge_response(error: OAuthError, resource_metadata_url: str) -> JSONResponse:
    """JSON error response carrying the discovery challenge headers."""
    return create_oauth_error_response(
        error, headers=get_bearer_challenge_headers(resource_metadata_url, error)
    )


def validate_redirect_uri(uri: str) -> None:
    """
    Validate an OAuth redirect URI.

    Args:
        uri: The redirect URI to validate

    Raises:
        OAuthValidationError: If the URI is invalid
    """
    if not uri or not isinstance(uri, str):
        raise OAuthValidationError("Redirect URI is required", "redirect_uri")

    try:
        parsed = urlparse(uri)
    except ValueError:
        raise OAuthValidationError("Malformed redirect URI", "redirect_uri")

    if not parsed.scheme or not parsed.netloc:
        raise OAuthValidationError("Redirect URI must be absolute", "redirect_uri")

    if parsed.scheme not in ["http", "https"]:
        raise OAuthValidationError("Redirect URI must use HTTP or HTTPS", "redirect_uri")

    if parsed.scheme == "http" and parsed.hostname not in ["localhost", "127.0.0.1"]:
        logger.warning(f"Insecure redirect URI: {uri}")


def validate_registration_request(request_data: Dict[str, Any]) -> None:
    """
    Validate an OAuth client registration request.

    Args:
        request_data: The registration request data to validate

    Raises:
        OAuthValidationError: If the request is invalid
    """
    redirect_uris = request_data.get("redirect_uris", [])
    if redirect_uris:
        if not isinstance(redirect_uris, list):
            raise OAuthValidationError("redirect_uris must be an array", "redirect_uris")

        for uri in redirect_uris:
            validate_redirect_uri(uri)

    client_name = request_data.get("client_name")
    if client_name is not None and not isinstance(client_name, str):
        raise OAuthValidationError("client_name must be a string", "client_name")

    grant_types = request_data.get("grant_types", [])
    if grant_types:
        if not isinstance(grant_types, list):
            raise OAuthValidationError("grant_types must be an array", "grant_types")

        allowed_grant_types = ["authorization_code", "refresh_token"]
        for grant_type in grant_types:
            if grant_type not in allowed_grant_types:
                raise OAuthValidationError(f"Unsupported grant type: {grant_type}", "grant_types")


def log_security_event(event_type: str, details: Dict[str, Any], request: Optional[Request] = None) -> None:
    """
    Log security-related events for monitoring.

    Args:
        event_type: Type of security event
        details: Event details
        request: Optional request object for context
    """
    log_data = {
        "event_type": event_type,
        "details": details
    }

    if request:
        log_data["request"] = {
            "method": request.method,
            "path": request.url.path,
            "user_agent": request.headers.get("user-agent", "unknown"),
            "origin": request.headers.get("origin", "unknown")
        }

    logger.warning(f"Security event: {log_data}")
