"""
Google-facing OAuth client for the proxy.

A GoogleOAuthClient is built per request from the configured client keys and
the request's public callback URL. It builds consent URLs, exchanges and
refreshes tokens, and asks Google's tokeninfo endpoint about Bearer tokens.
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp
from google.oauth2.credentials import Credentials
from starlette.requests import Request

from auth.credential_store import load_client_config
from auth.oauth_config import get_oauth_config
from auth.oauth_types import GoogleTokens, TokenInfo
from auth.scopes import SCOPES, get_scope_string

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_ENDPOINT = "https://oauth2.googleapis.com/tokeninfo"

REQUEST_TIMEOUT_SECONDS = 15


class GoogleOAuthError(Exception):
    """
    A call to Google's OAuth endpoints failed.

    rejected is True when Google answered and refused (bad code, revoked or
    expired token); False when Google could not be reached or answered with a
    server error.
    """

    def __init__(self, description: str, rejected: bool, status: Optional[int] = None):
        self.description = description
        self.rejected = rejected
        self.status = status
        super().__init__(description)


class GoogleOAuthClient:
    """OAuth client bound to this server's Google client id and callback URL."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, token_uri: str = GOOGLE_TOKEN_ENDPOINT):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_uri = token_uri

    def generate_auth_url(self, state: str) -> str:
        """Google consent URL requesting offline access to the Drive scopes."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": get_scope_string(),
            "access_type": "offline",
            # Forces a refresh token on every consent
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> GoogleTokens:
        """Exchange a Google authorization code for tokens."""
        payload = await self._post_token_endpoint({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        })
        logger.info("Exchanged Google authorization code for tokens")
        return self._tokens_from_payload(payload)

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        """Get a fresh access token. Google does not rotate the refresh token."""
        payload = await self._post_token_endpoint({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        logger.info("Refreshed Google access token")
        return self._tokens_from_payload(payload)

    async def get_token_info(self, access_token: str) -> TokenInfo:
        """Look up the scopes and subject of an access token."""
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)) as session:
                async with session.get(GOOGLE_TOKENINFO_ENDPOINT, params={"access_token": access_token}) as response:
                    data = await self._read_json(response)
                    if response.status != 200:
                        description = data.get("error_description") or data.get("error") or "Token rejected"
                        raise GoogleOAuthError(description, rejected=response.status < 500, status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Could not reach Google tokeninfo endpoint: {e}")
            raise GoogleOAuthError(f"Could not reach Google: {e}", rejected=False)

        return TokenInfo.from_tokeninfo(data)

    def credentials_for(self, access_token: str, refresh_token: Optional[str] = None) -> Credentials:
        """google-auth credentials carrying a client-supplied access token."""
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
        )

    async def _post_token_endpoint(self, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)) as session:
                async with session.post(self.token_uri, data=data) as response:
                    payload = await self._read_json(response)
                    if response.status != 200:
                        error = payload.get("error", "unknown_error")
                        description = payload.get("error_description") or error
                        logger.error(f"Google token endpoint returned {response.status}: {error}")
                        raise GoogleOAuthError(
                            f"Google rejected the request: {description}",
                            rejected=response.status < 500,
                            status=response.status,
                        )
                    return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Could not reach Google token endpoint: {e}")
            raise GoogleOAuthError(f"Could not reach Google: {e}", rejected=False)

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            data = await response.json(content_type=None)
        except ValueError:
            raise GoogleOAuthError(
                f"Google returned a non-JSON response (HTTP {response.status})",
                rejected=False,
                status=response.status,
            )
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _tokens_from_payload(payload: Dict[str, Any]) -> GoogleTokens:
        try:
            return GoogleTokens.from_token_response(payload)
        except ValueError as e:
            raise GoogleOAuthError(str(e), rejected=False)


def create_google_oauth_client(request: Optional[Request] = None) -> GoogleOAuthClient:
    """
    Build a Google OAuth client for the current request.

    Keys are reloaded on every call and nothing is shared between requests.

    Raises:
        OAuthConfigurationError: If no client keys are configured
    """
    web_config = load_client_config()["web"]
    return GoogleOAuthClient(
        client_id=web_config["client_id"],
        client_secret=web_config["client_secret"],
        redirect_uri=get_oauth_config().get_callback_url(request),
        token_uri=web_config.get("token_uri", GOOGLE_TOKEN_ENDPOINT),
    )
