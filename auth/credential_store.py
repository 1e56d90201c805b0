"""
Credential Store API for the Google Drive MCP server

This module resolves the server's own OAuth client keys and stores the
pre-provisioned, per-user Drive credentials used by stdio and by the HTTP
transports when Bearer authentication is optional or disabled.
"""

import os
import re
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime
from threading import RLock

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from auth.oauth_config import get_oauth_config
from auth.oauth_error_handling import OAuthConfigurationError
from auth.scopes import SCOPES

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9@._+-]{1,128}$")


def load_client_config() -> Dict[str, Any]:
    """
    Load the server's Google OAuth client configuration.

    Priority order:
    1. GDRIVE_OAUTH (JSON holding a "web" or "installed" block)
    2. GOOGLE_OAUTH_CLIENT_ID / GOOGLE_OAUTH_CLIENT_SECRET
    3. The keys file at GDRIVE_OAUTH_PATH

    Returns:
        Client config in the {"web": {...}} shape expected by google-auth-oauthlib

    Raises:
        OAuthConfigurationError: If no usable keys are found
    """
    config = get_oauth_config()

    if config.oauth_keys_json:
        try:
            keys = json.loads(config.oauth_keys_json)
        except json.JSONDecodeError as e:
            raise OAuthConfigurationError(f"GDRIVE_OAUTH is not valid JSON: {e}")
        logger.debug("Loaded OAuth client keys from GDRIVE_OAUTH")
        return _normalize_client_config(keys, "GDRIVE_OAUTH")

    if config.client_id and config.client_secret:
        logger.debug("Loaded OAuth client keys from environment variables")
        return _normalize_client_config(
            {"web": {"client_id": config.client_id, "client_secret": config.client_secret}},
            "environment",
        )

    if config.oauth_keys_path and os.path.exists(config.oauth_keys_path):
        try:
            with open(config.oauth_keys_path, "r") as f:
                keys = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            raise OAuthConfigurationError(
                f"Could not read OAuth keys file {config.oauth_keys_path}: {e}"
            )
        logger.debug(f"Loaded OAuth client keys from {config.oauth_keys_path}")
        return _normalize_client_config(keys, config.oauth_keys_path)

    raise OAuthConfigurationError(
        "OAuth client keys not configured. Set GOOGLE_OAUTH_CLIENT_ID and "
        "GOOGLE_OAUTH_CLIENT_SECRET, GDRIVE_OAUTH, or provide a keys file at GDRIVE_OAUTH_PATH."
    )


def _normalize_client_config(keys: Dict[str, Any], source: str) -> Dict[str, Any]:
    block = keys.get("web") or keys.get("installed")
    if not isinstance(block, dict) or not block.get("client_id") or not block.get("client_secret"):
        raise OAuthConfigurationError(
            f"OAuth keys from {source} must contain a 'web' or 'installed' block with client_id and client_secret"
        )
    web_config = {
        "client_id": block["client_id"],
        "client_secret": block["client_secret"],
        "auth_uri": block.get("auth_uri", GOOGLE_AUTH_URI),
        "token_uri": block.get("token_uri", GOOGLE_TOKEN_URI),
    }
    if block.get("redirect_uris"):
        web_config["redirect_uris"] = list(block["redirect_uris"])
    return {"web": web_config}


def validate_user_id(user_id: str) -> str:
    """
    Check a user id before it becomes part of a file name.

    Raises:
        ValueError: If the id is empty or contains path characters
    """
    if not user_id or not _USER_ID_PATTERN.match(user_id) or user_id in (".", ".."):
        raise ValueError(f"Invalid user id: {user_id!r}")
    return user_id


class CredentialStore(ABC):
    """Abstract base class for per-user credential storage."""

    @abstractmethod
    def get_credential(self, user_id: str) -> Optional[Credentials]:
        """
        Get credentials for a user.

        Args:
            user_id: Pre-auth user identifier

        Returns:
            Google Credentials object or None if not found
        """
        pass

    @abstractmethod
    def store_credential(self, user_id: str, credentials: Credentials) -> bool:
        """
        Store credentials for a user.

        Returns:
            True if successfully stored, False otherwise
        """
        pass

    @abstractmethod
    def delete_credential(self, user_id: str) -> bool:
        pass

    @abstractmethod
    def list_users(self) -> List[str]:
        """
        List all users with stored credentials.

        Returns:
            List of user ids
        """
        pass


class LocalDirectoryCredentialStore(CredentialStore):
    """Credential store that keeps one user-<id>.json file per user."""

    def __init__(self, base_dir: Optional[str] = None):
        """
        Initialize the local JSON credential store.

        Args:
            base_dir: Base directory for credential files. If None, uses
                     GDRIVE_CREDENTIALS_DIR (default ~/.gdrive-mcp).
        """
        self.base_dir = base_dir or get_oauth_config().credentials_dir
        logger.info(f"LocalDirectoryCredentialStore initialized with base_dir: {self.base_dir}")

    def _get_credential_path(self, user_id: str) -> str:
        return os.path.join(self.base_dir, f"user-{validate_user_id(user_id)}.json")

    def get_credential(self, user_id: str) -> Optional[Credentials]:
        """Get credentials from local JSON file."""
        creds_path = self._get_credential_path(user_id)

        if not os.path.exists(creds_path):
            logger.debug(f"No credential file found for {user_id} at {creds_path}")
            return None

        try:
            with open(creds_path, "r") as f:
                creds_data = json.load(f)

            expiry = None
            if creds_data.get("expiry"):
                try:
                    expiry = datetime.fromisoformat(creds_data["expiry"])
                    # google-auth compares against naive UTC datetimes
                    if expiry.tzinfo is not None:
                        expiry = expiry.replace(tzinfo=None)
                except (ValueError, TypeError) as e:
                    logger.warning(f"Could not parse expiry time for {user_id}: {e}")

            credentials = Credentials(
                token=creds_data.get("token"),
                refresh_token=creds_data.get("refresh_token"),
                token_uri=creds_data.get("token_uri", GOOGLE_TOKEN_URI),
                client_id=creds_data.get("client_id"),
                client_secret=creds_data.get("client_secret"),
                scopes=creds_data.get("scopes") or SCOPES,
                expiry=expiry,
            )

            logger.debug(f"Loaded credentials for {user_id} from {creds_path}")
            return credentials

        except (IOError, json.JSONDecodeError, KeyError) as e:
            logger.error(f"Error loading credentials for {user_id} from {creds_path}: {e}")
            return None

    def store_credential(self, user_id: str, credentials: Credentials) -> bool:
        """Store credentials to local JSON file."""
        creds_path = self._get_credential_path(user_id)

        creds_data = {
            "token": credentials.token,
            "refresh_token": credentials.refresh_token,
            "token_uri": credentials.token_uri,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "scopes": credentials.scopes,
            "expiry": credentials.expiry.isoformat() if credentials.expiry else None,
        }

        try:
            os.makedirs(self.base_dir, mode=0o700, exist_ok=True)
            with open(creds_path, "w") as f:
                json.dump(creds_data, f, indent=2)
            os.chmod(creds_path, 0o600)
            logger.info(f"Stored credentials for {user_id} to {creds_path}")
            return True
        except IOError as e:
            logger.error(f"Error storing credentials for {user_id} to {creds_path}: {e}")
            return False

    def delete_credential(self, user_id: str) -> bool:
        """Delete credential file for a user."""
        creds_path = self._get_credential_path(user_id)

        try:
            if os.path.exists(creds_path):
                os.remove(creds_path)
                logger.info(f"Deleted credentials for {user_id} from {creds_path}")
            return True
        except IOError as e:
            logger.error(f"Error deleting credentials for {user_id} from {creds_path}: {e}")
            return False

    def list_users(self) -> List[str]:
        """List all users with credential files."""
        if not os.path.isdir(self.base_dir):
            return []

        users = []
        try:
            for filename in os.listdir(self.base_dir):
                if filename.startswith("user-") and filename.endswith(".json"):
                    users.append(filename[len("user-"):-len(".json")])
            logger.debug(f"Found {len(users)} users with credentials in {self.base_dir}")
        except OSError as e:
            logger.error(f"Error listing credential files in {self.base_dir}: {e}")

        return sorted(users)


# Global credential store instance
_credential_store: Optional[CredentialStore] = None

# Pre-auth credentials already loaded, per user
_preauth_cache: Dict[str, Credentials] = {}
_preauth_lock = RLock()


def get_credential_store() -> CredentialStore:
    """
    Get the global credential store instance.

    Returns:
        Configured credential store instance
    """
    global _credential_store

    if _credential_store is None:
        _credential_store = LocalDirectoryCredentialStore()
        logger.info(f"Initialized credential store: {type(_credential_store).__name__}")

    return _credential_store


def set_credential_store(store: Optional[CredentialStore]):
    """
    Set the global credential store instance and drop cached pre-auth credentials.

    Args:
        store: Credential store instance to use, or None to rebuild from config
    """
    global _credential_store
    _credential_store = store
    with _preauth_lock:
        _preauth_cache.clear()
    if store is not None:
        logger.info(f"Set credential store: {type(store).__name__}")


def get_preauth_credentials(user_id: str) -> Optional[Credentials]:
    """
    Get pre-provisioned credentials for a user, refreshing them when expired.

    Blocking (file I/O and a possible token refresh); call from a worker thread
    inside async code.

    Returns:
        Valid Credentials, or None if the user has none or they cannot be refreshed
    """
    validate_user_id(user_id)
    with _preauth_lock:
        credentials = _preauth_cache.get(user_id)

    store = get_credential_store()
    if credentials is None:
        credentials = store.get_credential(user_id)
        if credentials is None:
            return None

    if not credentials.valid:
        if not credentials.refresh_token:
            logger.warning(f"Pre-auth credentials for {user_id} are expired and have no refresh token")
            return None
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            logger.error(f"Failed to refresh pre-auth credentials for {user_id}: {e}")
            with _preauth_lock:
                _preauth_cache.pop(user_id, None)
            return None
        store.store_credential(user_id, credentials)
        logger.info(f"Refreshed pre-auth credentials for {user_id}")

    with _preauth_lock:
        _preauth_cache[user_id] = credentials
    return credentials
