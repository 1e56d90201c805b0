"""
OAuth Configuration Management

This module centralizes the configuration of the OAuth proxy and the HTTP
transports: server address, externally reachable URL, OAuth client key sources,
credential storage and the Bearer authentication policy. It also computes the
public base URL of a request and builds the RFC 9728 / RFC 8414 metadata.
"""

import os
from typing import List, Optional, Dict, Any

from starlette.requests import Request

from auth.oauth_types import AuthPolicy
from auth.scopes import SCOPES

PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
CALLBACK_PATH = "/oauth/callback"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class OAuthConfig:
    """
    Centralized configuration read from environment variables.

    A fresh instance is built by reload_oauth_config(), so tests and the CLI can
    change the environment and pick up new values.
    """

    def __init__(self):
        # Base server configuration
        self.host = os.getenv("GDRIVE_MCP_HOST", "0.0.0.0")
        self.base_uri = os.getenv("GDRIVE_MCP_BASE_URI", "http://localhost")
        self.port = int(os.getenv("PORT", os.getenv("GDRIVE_MCP_PORT", "8000")))
        self.base_url = f"{self.base_uri}:{self.port}"

        # External URL for reverse proxy scenarios; wins over header inference
        self.external_url = (os.getenv("GDRIVE_EXTERNAL_URL") or "").rstrip("/") or None

        # Hosts ending with this suffix are always served over HTTPS
        self.cdn_host_suffix = os.getenv("GDRIVE_MCP_CDN_SUFFIX", "cloudfront.net")

        # OAuth client key sources, checked in order by the credential store
        self.client_id = os.getenv("GOOGLE_OAUTH_CLIENT_ID")
        self.client_secret = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET")
        self.oauth_keys_json = os.getenv("GDRIVE_OAUTH")
        self.oauth_keys_path = os.getenv("GDRIVE_OAUTH_PATH", "gcp-oauth.keys.json")

        # Pre-provisioned per-user credentials
        self.credentials_dir = os.path.expanduser(
            os.getenv("GDRIVE_CREDENTIALS_DIR", os.path.join("~", ".gdrive-mcp"))
        )
        self.default_user = os.getenv("GDRIVE_DEFAULT_USER", "default")

        self.auth_policy = AuthPolicy.from_value(os.getenv("MCP_AUTH_POLICY"))
        self.development = _env_flag("GDRIVE_MCP_DEVELOPMENT")

        # PKCE methods are advertised in metadata only, verifiers are not checked
        self.supported_code_challenge_methods = ["S256", "plain"]

        # Transport mode (will be set at runtime)
        self._transport_mode = "stdio"

    def get_allowed_origins(self) -> List[str]:
        """
        Get allowed CORS origins.

        Returns:
            Origins from OAUTH_ALLOWED_ORIGINS, or ["*"] when unset
        """
        custom_origins = os.getenv("OAUTH_ALLOWED_ORIGINS")
        if not custom_origins:
            return ["*"]
        origins = [origin.strip() for origin in custom_origins.split(",") if origin.strip()]
        return list(dict.fromkeys(origins))

    def get_public_base_url(self, request: Optional[Request] = None) -> str:
        """
        Get the externally visible base URL for a request.

        Order: configured external URL, then forwarded headers, then the raw
        connection. A host under the CDN suffix always gets https.

        Args:
            request: The incoming request, if any

        Returns:
            Base URL without a trailing slash
        """
        if self.external_url:
            return self.external_url
        if request is None:
            return self.base_url

        headers = request.headers
        host = _first_header_value(headers.get("x-forwarded-host")) or headers.get("host")
        if not host:
            host = request.url.netloc

        if self.cdn_host_suffix and _hostname(host).endswith(self.cdn_host_suffix):
            scheme = "https"
        else:
            scheme = (
                _first_header_value(headers.get("x-forwarded-proto"))
                or _first_header_value(headers.get("cloudfront-forwarded-proto"))
                or request.url.scheme
            )

        return f"{scheme}://{host}"

    def get_callback_url(self, request: Optional[Request] = None) -> str:
        """The redirect URI registered with Google for the proxy callback."""
        return f"{self.get_public_base_url(request)}{CALLBACK_PATH}"

    def get_protected_resource_metadata_url(self, request: Optional[Request] = None) -> str:
        return f"{self.get_public_base_url(request)}{PROTECTED_RESOURCE_METADATA_PATH}"

    def get_protected_resource_metadata(self, request: Optional[Request] = None) -> Dict[str, Any]:
        """
        Get protected resource metadata per RFC 9728.

        The server names itself as the authorization server; its own RFC 8414
        document lives at the well-known path under that issuer.
        """
        server_url = self.get_public_base_url(request)
        return {
            "resource": server_url,
            "authorization_servers": [server_url],
            "scopes_supported": list(SCOPES),
            "bearer_methods_supported": ["header"],
            "resource_name": "Google Drive MCP Server",
        }

    def get_authorization_server_metadata(self, request: Optional[Request] = None) -> Dict[str, Any]:
        """
        Get OAuth authorization server metadata per RFC 8414.

        Returns:
            Authorization server metadata dictionary
        """
        server_url = self.get_public_base_url(request)
        return {
            "issuer": server_url,
            "authorization_endpoint": f"{server_url}/oauth/authorize",
            "token_endpoint": f"{server_url}/oauth/token",
            "registration_endpoint": f"{server_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": self.supported_code_challenge_methods,
            "scopes_supported": list(SCOPES),
        }

    def get_environment_summary(self) -> dict:
        """
        Get a summary of the current configuration.

        Returns:
            Dictionary with configuration summary (excluding secrets)
        """
        return {
            "base_url": self.base_url,
            "external_url": self.external_url,
            "client_configured": bool(self.client_id or self.oauth_keys_json),
            "oauth_keys_path": self.oauth_keys_path,
            "credentials_dir": self.credentials_dir,
            "default_user": self.default_user,
            "auth_policy": self.auth_policy.value,
            "development": self.development,
            "transport_mode": self._transport_mode,
        }

    def set_transport_mode(self, mode: str) -> None:
        self._transport_mode = mode

    def get_transport_mode(self) -> str:
        return self._transport_mode


def _first_header_value(value: Optional[str]) -> Optional[str]:
    """Proxies may append to forwarded headers; the first entry is the client-facing one."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def _hostname(host: str) -> str:
    return host.split(":")[0].lower()


# Global configuration instance
_oauth_config = None


def get_oauth_config() -> OAuthConfig:
    """
    Get the global OAuth configuration instance.

    Returns:
        The singleton OAuth configuration instance
    """
    global _oauth_config
    if _oauth_config is None:
        _oauth_config = OAuthConfig()
    return _oauth_config


def reload_oauth_config() -> OAuthConfig:
    """
    Reload the OAuth configuration from environment variables.

    This is useful for testing or when environment variables change.

    Returns:
        The reloaded OAuth configuration instance
    """
    global _oauth_config
    _oauth_config = OAuthConfig()
    return _oauth_config


# Convenience functions
def is_development_mode() -> bool:
    """Whether error details may be shown to clients."""
    return get_oauth_config().development


def set_transport_mode(mode: str) -> None:
    """Set the current transport mode."""
    get_oauth_config().set_transport_mode(mode)


def get_transport_mode() -> str:
    """Get the current transport mode."""
    return get_oauth_config().get_transport_mode()
