"""
Tests for Bearer authentication and discovery metadata.
"""
from google.oauth2.credentials import Credentials

from auth.google_oauth_client import GoogleOAuthError
from auth.oauth_types import AuthPolicy, TokenInfo
from auth.scopes import DRIVE_METADATA_READONLY_SCOPE, get_scope_string

METADATA_URL = "http://testserver/.well-known/oauth-protected-resource"


def _assert_discovery_challenge(response, metadata_url=METADATA_URL):
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == f'Bearer resource_metadata="{metadata_url}"'
    assert response.headers["link"] == f'<{metadata_url}>; rel="oauth-protected-resource"'
    assert response.json()["error"] == "invalid_token"


class TestRequiredPolicy:
    def test_missing_token_returns_discovery_challenge(self, client):
        _assert_discovery_challenge(client.post("/mcp", json={}))
        _assert_discovery_challenge(client.get("/sse"))

    def test_metadata_url_in_challenge_is_fetchable(self, client):
        response = client.get("/mcp")
        challenge = response.headers["www-authenticate"]
        metadata_url = challenge.split('resource_metadata="')[1].rstrip('"')

        metadata = client.get(metadata_url)
        assert metadata.status_code == 200
        assert metadata.json()["resource"] == "http://testserver"

    def test_challenge_uses_forwarded_origin(self, client):
        response = client.get("/mcp", headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "mcp.example.com"})
        _assert_discovery_challenge(response, "https://mcp.example.com/.well-known/oauth-protected-resource")

    def test_cdn_host_forces_https(self, client):
        response = client.get("/mcp", headers={"Host": "d111111abcdef8.cloudfront.net", "X-Forwarded-Proto": "http"})
        _assert_discovery_challenge(
            response, "https://d111111abcdef8.cloudfront.net/.well-known/oauth-protected-resource"
        )

    def test_malformed_authorization_header(self, client, mock_google):
        response = client.get("/mcp", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        _assert_discovery_challenge(response)
        assert "Bearer <token>" in response.json()["error_description"]
        mock_google.get_token_info.assert_not_awaited()

    def test_rejected_token(self, client, mock_google):
        mock_google.get_token_info.side_effect = GoogleOAuthError("invalid_token", rejected=True, status=400)
        _assert_discovery_challenge(client.get("/mcp", headers={"Authorization": "Bearer expired"}))

    def test_token_without_drive_scope(self, client, mock_google):
        mock_google.get_token_info.return_value = TokenInfo(scopes=["openid", "email"], email="user@example.com")
        response = client.get("/mcp", headers={"Authorization": "Bearer ya29.valid-token"})

        assert response.status_code == 403
        assert response.json()["error"] == "insufficient_scope"
        challenge = response.headers["www-authenticate"]
        assert 'error="insufficient_scope"' in challenge
        assert f'scope="{get_scope_string()}"' in challenge
        assert f'resource_metadata="{METADATA_URL}"' in challenge

    def test_any_drive_scope_is_enough(self, client, mock_google):
        mock_google.get_token_info.return_value = TokenInfo(scopes=[DRIVE_METADATA_READONLY_SCOPE])
        response = client.get("/mcp", headers={"Authorization": "Bearer ya29.valid-token"})
        # Past authentication: the Streamable HTTP endpoint rejects a GET without a session
        assert response.status_code == 400
        assert "Missing session ID" in response.text

    def test_google_unreachable(self, client, mock_google):
        mock_google.get_token_info.side_effect = GoogleOAuthError("Could not reach Google", rejected=False)
        response = client.get("/mcp", headers={"Authorization": "Bearer ya29.valid-token"})

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"

    def test_token_is_validated_on_every_request(self, client, mock_google, auth_headers):
        client.get("/mcp", headers=auth_headers)
        client.get("/mcp", headers=auth_headers)
        assert mock_google.get_token_info.await_count == 2

    def test_public_paths_skip_authentication(self, client, mock_google):
        assert client.get("/health").status_code == 200
        assert client.get("/.well-known/oauth-authorization-server").status_code == 200
        assert client.get("/oauth/authorize", follow_redirects=False).status_code == 302
        mock_google.get_token_info.assert_not_awaited()

    def test_users_route_not_mounted(self, client):
        assert client.get("/users").status_code == 404

    def test_cors_preflight_is_not_challenged(self, client):
        response = client.options(
            "/mcp",
            headers={"Origin": "https://app.example.com", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert "www-authenticate" not in response.headers


def _store_user(credential_store, user_id="default"):
    credential_store.store_credential(user_id, Credentials(
        token="ya29.preauth",
        refresh_token="1//preauth-refresh",
        token_uri="https://oauth2.googleapis.com/token",
        client_id="id",
        client_secret="secret",
    ))


class TestOptionalPolicy:
    def test_falls_back_to_preauth_user(self, app_client, credential_store, mock_google):
        _store_user(credential_store)
        with app_client(AuthPolicy.OPTIONAL) as client:
            response = client.get("/mcp")
        assert response.status_code == 400
        assert "Missing session ID" in response.text
        mock_google.get_token_info.assert_not_awaited()

    def test_challenge_when_no_preauth_user(self, app_client, credential_store):
        with app_client(AuthPolicy.OPTIONAL) as client:
            _assert_discovery_challenge(client.get("/mcp"))

    def test_supplied_token_is_still_validated(self, app_client, credential_store, mock_google):
        _store_user(credential_store)
        mock_google.get_token_info.side_effect = GoogleOAuthError("invalid_token", rejected=True, status=400)
        with app_client(AuthPolicy.OPTIONAL) as client:
            _assert_discovery_challenge(client.get("/mcp", headers={"Authorization": "Bearer bad"}))

    def test_users_listing(self, app_client, credential_store):
        _store_user(credential_store, "alice@example.com")
        with app_client(AuthPolicy.OPTIONAL) as client:
            response = client.get("/users")
        assert response.status_code == 200
        assert response.json()["users"] == ["alice@example.com"]


class TestDisabledPolicy:
    def test_bearer_token_is_ignored(self, app_client, credential_store, mock_google):
        _store_user(credential_store, "bob")
        with app_client(AuthPolicy.DISABLED) as client:
            response = client.get("/mcp?user=bob", headers={"Authorization": "Bearer whatever"})
        assert response.status_code == 400
        assert "Missing session ID" in response.text
        mock_google.get_token_info.assert_not_awaited()

    def test_user_header_selects_credentials(self, app_client, credential_store):
        _store_user(credential_store, "carol")
        with app_client(AuthPolicy.DISABLED) as client:
            response = client.get("/mcp", headers={"X-GDrive-User": "carol"})
        assert "Missing session ID" in response.text

    def test_missing_credentials_names_available_users(self, app_client, credential_store):
        _store_user(credential_store, "dave")
        with app_client(AuthPolicy.DISABLED) as client:
            response = client.get("/mcp?user=erin")
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_request"
        assert "dave" in body["error_description"]

    def test_invalid_user_id(self, app_client, credential_store):
        with app_client(AuthPolicy.DISABLED) as client:
            response = client.get("/mcp", params={"user": "../etc/passwd"})
        assert response.status_code == 400


class TestDiscoveryMetadata:
    def test_protected_resource_metadata(self, client):
        response = client.get("/.well-known/oauth-protected-resource")
        body = response.json()

        assert body["resource"] == "http://testserver"
        assert body["authorization_servers"] == ["http://testserver"]
        assert body["bearer_methods_supported"] == ["header"]
        assert set(body["scopes_supported"]) == set(get_scope_string().split(" "))
        assert "max-age=3600" in response.headers["cache-control"]

    def test_authorization_server_metadata(self, client):
        body = client.get("/.well-known/oauth-authorization-server").json()

        assert body["issuer"] == "http://testserver"
        assert body["authorization_endpoint"] == "http://testserver/oauth/authorize"
        assert body["token_endpoint"] == "http://testserver/oauth/token"
        assert body["registration_endpoint"] == "http://testserver/oauth/register"
        assert body["response_types_supported"] == ["code"]
        assert body["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert body["code_challenge_methods_supported"] == ["S256", "plain"]

    def test_external_url_wins(self, app_client, monkeypatch):
        from auth.oauth_config import reload_oauth_config

        monkeypatch.setenv("GDRIVE_EXTERNAL_URL", "https://drive-mcp.example.org/")
        reload_oauth_config()
        with app_client() as client:
            body = client.get(
                "/.well-known/oauth-authorization-server",
                headers={"X-Forwarded-Host": "other.example.com"},
            ).json()
        assert body["issuer"] == "https://drive-mcp.example.org"


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["service"] == "gdrive-mcp"
    assert body["active_sessions"] == 0
    assert body["auth_policy"] == "required"
