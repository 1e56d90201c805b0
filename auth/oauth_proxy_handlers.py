"""
OAuth authorization-code proxy endpoints.

The server fronts Google's OAuth server: /oauth/authorize sends the browser to
Google, /oauth/callback receives Google's code and either mints a one-time
proxy code for the MCP client or shows the token to a person, and
/oauth/token exchanges proxy codes and refresh tokens. Metadata endpoints
advertise the proxy itself as the authorization server.
"""

import logging
import secrets
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

from auth.ephemeral_store import (
    get_pending_authorizations,
    get_authorization_codes,
    get_client_registrations,
)
from auth.google_oauth_client import GoogleOAuthError, create_google_oauth_client
from auth.oauth_config import get_oauth_config
from auth.oauth_error_handling import (
    OAuthError,
    OAuthValidationError,
    OAuthConfigurationError,
    InvalidGrantError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    create_oauth_error_response,
    describe_internal_error,
    validate_redirect_uri,
    validate_registration_request,
    log_security_event,
)
from auth.oauth_responses import (
    create_error_response,
    create_server_error_response,
    create_token_display_response,
)
from auth.oauth_types import (
    PendingAuthorization,
    ProxyAuthorizationCode,
    RegisteredClient,
)
from core.utils import parse_request_body_leniently

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _append_query_params(uri: str, params: dict) -> str:
    """Add params to a URI, keeping any query it already carries."""
    parsed = urlparse(uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


async def handle_oauth_authorize(request: Request):
    """Start an authorization flow and redirect the browser to Google."""
    params = request.query_params
    response_type = params.get("response_type")

    try:
        if response_type is not None and response_type != "code":
            raise UnsupportedResponseTypeError(response_type)
        if params.get("redirect_uri"):
            validate_redirect_uri(params["redirect_uri"])

        client = create_google_oauth_client(request)

        store = get_pending_authorizations()
        store.sweep_expired()

        state = secrets.token_hex(32)
        store.put(state, PendingAuthorization(
            client_redirect_uri=params.get("redirect_uri") or None,
            client_state=params.get("state"),
        ))
        logger.info(
            f"OAuth authorize: pending flow created "
            f"({'client redirect' if params.get('redirect_uri') else 'manual'}), "
            f"{len(store)} pending"
        )

        return RedirectResponse(url=client.generate_auth_url(state), status_code=302)

    except OAuthConfigurationError as e:
        logger.error(f"OAuth authorize failed: {e.description}")
        return create_server_error_response(e.description)
    except OAuthError as e:
        log_security_event("oauth_authorize_error", {
            "error_code": e.error_code,
            "description": e.description,
        }, request)
        return create_error_response(f"{e.error_code}: {e.description}", e.status_code)
    except Exception as e:
        logger.error(f"Unexpected error in OAuth authorize: {e}", exc_info=True)
        return create_server_error_response(describe_internal_error(e))


async def handle_oauth_callback(request: Request):
    """Receive Google's redirect, exchange the code and hand the result to the client."""
    params = request.query_params
    error = params.get("error")

    if error:
        description = params.get("error_description") or error
        logger.warning(f"OAuth callback: Google returned an error: {error}")
        return create_error_response(f"Authentication failed: Google returned an error: {description}")

    get_authorization_codes().sweep_expired()

    pending = get_pending_authorizations().take_once(params.get("state"))
    if pending is None:
        log_security_event("oauth_invalid_state", {
            "state_present": bool(params.get("state")),
        }, request)
        return create_error_response("Invalid or expired state parameter")

    code = params.get("code")
    if not code:
        return create_error_response("Authentication failed: No authorization code received from Google.")

    try:
        client = create_google_oauth_client(request)
        tokens = await client.exchange_code(code)
    except GoogleOAuthError as e:
        logger.error(f"OAuth callback: token exchange failed: {e.description}")
        return create_server_error_response(f"Token exchange with Google failed: {e.description}")
    except OAuthConfigurationError as e:
        return create_server_error_response(e.description)
    except Exception as e:
        logger.error(f"OAuth callback: unexpected error during token exchange: {e}", exc_info=True)
        return create_server_error_response(describe_internal_error(e, "Token exchange failed"))

    if pending.is_manual:
        logger.info("OAuth callback: manual flow completed, displaying token")
        return create_token_display_response(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in(),
            server_url=get_oauth_config().get_public_base_url(request),
        )

    proxy_code = secrets.token_urlsafe(32)
    get_authorization_codes().put(proxy_code, ProxyAuthorizationCode(tokens=tokens))
    logger.info("OAuth callback: proxy authorization code issued, redirecting to client")

    redirect_url = _append_query_params(pending.client_redirect_uri, {
        "code": proxy_code,
        "state": pending.client_state,
    })
    return RedirectResponse(url=redirect_url, status_code=302)


async def handle_oauth_token(request: Request):
    """Exchange a proxy authorization code or a refresh token for an access token."""
    try:
        data = await parse_request_body_leniently(request)

        grant_type = data.get("grant_type")
        if not grant_type:
            raise OAuthValidationError("grant_type is required")

        if grant_type == "authorization_code":
            code = data.get("code")
            if not code:
                raise OAuthValidationError("code is required for the authorization_code grant")

            record = get_authorization_codes().take_once(code)
            if record is None:
                log_security_event("oauth_invalid_code", {"grant_type": grant_type}, request)
                raise InvalidGrantError("Invalid or expired authorization code")

            logger.info("OAuth token: authorization code exchanged")
            return JSONResponse(content=record.tokens.to_token_response(), headers=NO_STORE_HEADERS)

        if grant_type == "refresh_token":
            refresh_token = data.get("refresh_token")
            if not refresh_token:
                raise OAuthValidationError("refresh_token is required for the refresh_token grant")

            client = create_google_oauth_client(request)
            try:
                tokens = await client.refresh_access_token(refresh_token)
            except GoogleOAuthError as e:
                if e.rejected:
                    raise InvalidGrantError(e.description)
                raise OAuthConfigurationError(e.description)

            return JSONResponse(
                content=tokens.to_token_response(include_refresh_token=False),
                headers=NO_STORE_HEADERS,
            )

        raise UnsupportedGrantTypeError(grant_type)

    except OAuthError as e:
        log_security_event("oauth_token_exchange_error", {
            "error_code": e.error_code,
            "description": e.description,
        }, request)
        return create_oauth_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in token exchange: {e}", exc_info=True)
        return create_oauth_error_response(OAuthConfigurationError(describe_internal_error(e)))


async def handle_oauth_register(request: Request):
    """Dynamic client registration. Records are kept for bookkeeping only."""
    try:
        data = await parse_request_body_leniently(request)
        validate_registration_request(data)

        store = get_client_registrations()
        store.sweep_expired()

        client = RegisteredClient(
            client_id=secrets.token_urlsafe(24),
            client_name=data.get("client_name"),
            redirect_uris=data.get("redirect_uris") or [],
        )
        store.put(client.client_id, client)
        logger.info(f"Registered OAuth client '{client.client_name or 'unnamed'}'")

        return JSONResponse(status_code=201, content=client.to_registration_response(), headers=NO_STORE_HEADERS)

    except OAuthError as e:
        log_security_event("oauth_registration_error", {
            "error_code": e.error_code,
            "description": e.description,
        }, request)
        return create_oauth_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in client registration: {e}", exc_info=True)
        return create_oauth_error_response(OAuthConfigurationError(describe_internal_error(e)))


async def handle_oauth_protected_resource(request: Request):
    """RFC 9728 protected resource metadata."""
    metadata = get_oauth_config().get_protected_resource_metadata(request)
    logger.debug("Returning protected resource metadata")
    return JSONResponse(content=metadata, headers={"Cache-Control": "public, max-age=3600"})


async def handle_oauth_authorization_server(request: Request):
    """RFC 8414 authorization server metadata."""
    metadata = get_oauth_config().get_authorization_server_metadata(request)
    logger.debug("Returning authorization server metadata")
    return JSONResponse(content=metadata, headers={"Cache-Control": "public, max-age=3600"})
