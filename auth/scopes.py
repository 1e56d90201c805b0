"""
Google Drive OAuth Scopes

This module centralizes the OAuth scope definitions requested from Google and
checked on every Bearer-authenticated request.
"""
import logging
from typing import Iterable, List

logger = logging.getLogger(__name__)

# Google Drive scopes
DRIVE_READONLY_SCOPE = 'https://www.googleapis.com/auth/drive.readonly'
DRIVE_METADATA_READONLY_SCOPE = 'https://www.googleapis.com/auth/drive.metadata.readonly'

# Scopes requested on /oauth/authorize and reported in token responses
SCOPES = [
    DRIVE_READONLY_SCOPE,
    DRIVE_METADATA_READONLY_SCOPE,
]


def get_scope_string() -> str:
    """Space-separated scope list, as used in OAuth query strings and token responses."""
    return " ".join(SCOPES)


def has_required_scope(granted_scopes: Iterable[str]) -> bool:
    """
    Check whether a token grants at least one of the Drive scopes.

    Args:
        granted_scopes: Scopes reported by Google's tokeninfo endpoint

    Returns:
        True if any required scope is present
    """
    granted = set(granted_scopes)
    return any(scope in granted for scope in SCOPES)


def parse_scope_string(scope: str) -> List[str]:
    """Split a space-delimited scope string, dropping empties."""
    if not scope:
        return []
    return [s for s in scope.split(" ") if s]
