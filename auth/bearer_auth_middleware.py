"""
Bearer token validation middleware.

Every HTTP request outside the public paths is authenticated before it reaches
the MCP transports. Tokens are checked against Google's tokeninfo endpoint on
every request; nothing is cached. Depending on the configured AuthPolicy, a
request without a token may instead use pre-provisioned credentials.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from auth.credential_store import get_credential_store, get_preauth_credentials, validate_user_id
from auth.google_oauth_client import GoogleOAuthError, create_google_oauth_client
from auth.oauth_config import get_oauth_config
from auth.oauth_error_handling import (
    OAuthError,
    OAuthValidationError,
    OAuthConfigurationError,
    InvalidTokenError,
    InsufficientScopeError,
    create_bearer_challenge_response,
    create_oauth_error_response,
    describe_internal_error,
    log_security_event,
)
from auth.oauth_types import AuthPolicy
from auth.scopes import has_required_scope

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/health", "/users", "/message"}
PUBLIC_PATH_PREFIXES = ("/oauth/", "/.well-known/")

USER_HEADER = "x-gdrive-user"
FALLBACK_SUBJECT = "authenticated-user"


def is_public_path(path: str) -> bool:
    """
    Paths that bypass Bearer validation.

    /message is routed by its unguessable SSE session id, and the session's
    credentials were validated when the stream opened.
    """
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PATH_PREFIXES)


class BearerAuthMiddleware:
    """Pure ASGI middleware; attaches credentials to request.state on success."""

    def __init__(self, app: ASGIApp, policy: Optional[AuthPolicy] = None):
        self.app = app
        self.policy = policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("method") == "OPTIONS" or is_public_path(scope["path"]):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        config = get_oauth_config()
        policy = self.policy or config.auth_policy

        try:
            auth_state = await self.authenticate(request, policy)
        except (InvalidTokenError, InsufficientScopeError) as e:
            log_security_event("bearer_auth_rejected", {
                "error_code": e.error_code,
                "description": e.description,
            }, request)
            response = create_bearer_challenge_response(
                e, config.get_protected_resource_metadata_url(request)
            )
            await response(scope, receive, send)
            return
        except OAuthError as e:
            response = create_oauth_error_response(e)
            await response(scope, receive, send)
            return
        except Exception as e:
            logger.error(f"Unexpected error validating request credentials: {e}", exc_info=True)
            response = create_oauth_error_response(OAuthConfigurationError(describe_internal_error(e)))
            await response(scope, receive, send)
            return

        for key, value in auth_state.items():
            setattr(request.state, key, value)
        await self.app(scope, receive, send)

    async def authenticate(self, request: Request, policy: AuthPolicy) -> Dict[str, Any]:
        """
        Resolve credentials for a request according to the policy.

        Returns:
            Attributes to set on request.state

        Raises:
            OAuthError: When the request cannot be authenticated
        """
        if policy is AuthPolicy.DISABLED:
            return await self._authenticate_preauth(request, required=True)

        header = request.headers.get("authorization")
        if not header:
            if policy is AuthPolicy.OPTIONAL:
                auth_state = await self._authenticate_preauth(request, required=False)
                if auth_state:
                    return auth_state
            raise InvalidTokenError("Missing Authorization header. Obtain a token from the authorization server.")

        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise InvalidTokenError("Authorization header must use the format 'Bearer <token>'")

        return await self._authenticate_bearer(request, token)

    async def _authenticate_bearer(self, request: Request, token: str) -> Dict[str, Any]:
        client = create_google_oauth_client(request)
        try:
            token_info = await client.get_token_info(token)
        except GoogleOAuthError as e:
            if not e.rejected:
                raise OAuthConfigurationError(f"Token validation unavailable: {e.description}")
            logger.info(f"Bearer token rejected by Google tokeninfo: {e.description}")
            raise InvalidTokenError(f"Token validation failed: {e.description}")

        if not has_required_scope(token_info.scopes):
            raise InsufficientScopeError(
                "Token does not grant any of the required Google Drive scopes"
            )

        user_id = token_info.email or FALLBACK_SUBJECT
        logger.debug(f"Bearer token validated for {user_id}")
        return {
            "google_credentials": client.credentials_for(token),
            "user_id": user_id,
            "auth_method": "oauth",
        }

    async def _authenticate_preauth(self, request: Request, required: bool) -> Optional[Dict[str, Any]]:
        user_id = (
            request.query_params.get("user")
            or request.headers.get(USER_HEADER)
            or get_oauth_config().default_user
        )
        try:
            validate_user_id(user_id)
        except ValueError as e:
            raise OAuthValidationError(str(e), "user")

        credentials = await asyncio.to_thread(get_preauth_credentials, user_id)
        if credentials is None:
            if not required:
                logger.debug(f"No pre-auth credentials for {user_id}, falling back to Bearer challenge")
                return None
            available = get_credential_store().list_users()
            raise OAuthValidationError(
                f"No stored credentials for user '{user_id}'. "
                f"Available users: {', '.join(available) if available else 'none'}"
            )

        logger.debug(f"Using pre-auth credentials for {user_id}")
        return {
            "google_credentials": credentials,
            "user_id": user_id,
            "auth_method": "preauth",
        }
