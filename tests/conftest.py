"""
Pytest fixtures and configuration.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from starlette.testclient import TestClient

from auth.credential_store import LocalDirectoryCredentialStore, set_credential_store
from auth.ephemeral_store import reset_oauth_stores
from auth.google_oauth_client import GoogleOAuthClient
from auth.oauth_config import reload_oauth_config
from auth.oauth_types import AuthPolicy, GoogleTokens, TokenInfo
from auth.scopes import DRIVE_READONLY_SCOPE
from core.session_registry import reset_session_registry

ENV_VARS = (
    "PORT",
    "GDRIVE_MCP_HOST",
    "GDRIVE_MCP_BASE_URI",
    "GDRIVE_EXTERNAL_URL",
    "GOOGLE_OAUTH_CLIENT_ID",
    "GOOGLE_OAUTH_CLIENT_SECRET",
    "GDRIVE_OAUTH",
    "GDRIVE_OAUTH_PATH",
    "GDRIVE_CREDENTIALS_DIR",
    "GDRIVE_DEFAULT_USER",
    "MCP_AUTH_POLICY",
    "GDRIVE_MCP_CDN_SUFFIX",
    "GDRIVE_MCP_DEVELOPMENT",
    "OAUTH_ALLOWED_ORIGINS",
)

TEST_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
TEST_CLIENT_SECRET = "test-client-secret"
VALID_TOKEN = "ya29.valid-token"


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def oauth_env(monkeypatch, tmp_path):
    """Isolated configuration, stores, registry and credential directory per test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", TEST_CLIENT_ID)
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", TEST_CLIENT_SECRET)
    monkeypatch.setenv("GDRIVE_OAUTH_PATH", str(tmp_path / "missing-keys.json"))
    monkeypatch.setenv("GDRIVE_CREDENTIALS_DIR", str(tmp_path / "credentials"))

    config = reload_oauth_config()
    reset_oauth_stores()
    reset_session_registry()
    set_credential_store(None)
    yield config
    set_credential_store(None)
    reset_session_registry()
    reset_oauth_stores()
    reload_oauth_config()


@pytest.fixture
def fake_clock():
    clock = FakeClock()
    reset_oauth_stores(clock)
    return clock


@pytest.fixture
def credential_store(tmp_path):
    store = LocalDirectoryCredentialStore(str(tmp_path / "credentials"))
    set_credential_store(store)
    return store


@pytest.fixture
def mock_google():
    """Google's token and tokeninfo endpoints, replaced with AsyncMocks."""
    with patch.object(GoogleOAuthClient, "exchange_code", new_callable=AsyncMock) as exchange_code, \
            patch.object(GoogleOAuthClient, "refresh_access_token", new_callable=AsyncMock) as refresh, \
            patch.object(GoogleOAuthClient, "get_token_info", new_callable=AsyncMock) as token_info:
        exchange_code.return_value = GoogleTokens(
            access_token="ya29.issued-token",
            refresh_token="1//refresh-token",
            expiry_date=None,
            scope=DRIVE_READONLY_SCOPE,
        )
        refresh.return_value = GoogleTokens(access_token="ya29.refreshed-token", refresh_token="1//refresh-token")
        token_info.return_value = TokenInfo(scopes=[DRIVE_READONLY_SCOPE], email="user@example.com", expires_in=3599)
        yield SimpleNamespace(exchange_code=exchange_code, refresh_access_token=refresh, get_token_info=token_info)


@pytest.fixture
def app_client():
    """Factory for a TestClient over a freshly built HTTP app."""
    from core.server import build_http_app

    def factory(policy: AuthPolicy = AuthPolicy.REQUIRED) -> TestClient:
        return TestClient(build_http_app(policy=policy))

    return factory


@pytest.fixture
def client(app_client):
    with app_client() as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {VALID_TOKEN}"}
