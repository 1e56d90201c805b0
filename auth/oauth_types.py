"""
Type definitions for the OAuth proxy.

This module provides the records kept in the ephemeral stores and the values
exchanged with Google, so handlers pass structured objects instead of dicts.
"""

import enum
import math
import time
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from auth.scopes import get_scope_string, parse_scope_string

DEFAULT_EXPIRES_IN = 3600


class AuthPolicy(str, enum.Enum):
    """How the HTTP transports treat requests without a Bearer token."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    DISABLED = "disabled"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "AuthPolicy":
        if not value:
            return cls.REQUIRED
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown auth policy '{value}'. Expected one of: "
                f"{', '.join(p.value for p in cls)}"
            )


@dataclass
class PendingAuthorization:
    """
    Context of an in-flight /oauth/authorize request, keyed by CSRF state.

    client_redirect_uri is None for manual flows, where the callback renders the
    token in the browser instead of redirecting.
    """
    client_redirect_uri: Optional[str] = None
    client_state: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_manual(self) -> bool:
        return not self.client_redirect_uri


@dataclass
class GoogleTokens:
    """Tokens returned by Google's token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expiry_date: Optional[float] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any], now: Optional[float] = None) -> "GoogleTokens":
        """
        Build tokens from a Google token endpoint JSON payload.

        Google reports a relative expires_in; it is pinned to an absolute expiry
        so the value stays correct while the tokens sit in the code store.
        """
        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("Token response did not include an access_token")

        now = time.time() if now is None else now
        expiry_date = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            expiry_date = now + float(expires_in)

        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expiry_date=expiry_date,
            scope=payload.get("scope"),
        )

    def expires_in(self, now: Optional[float] = None) -> int:
        """Seconds until expiry, or the one hour default when Google gave none."""
        if self.expiry_date is None:
            return DEFAULT_EXPIRES_IN
        now = time.time() if now is None else now
        return max(0, math.floor(self.expiry_date - now))

    def to_token_response(self, include_refresh_token: bool = True, now: Optional[float] = None) -> Dict[str, Any]:
        """Standard OAuth token response body."""
        response = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in(now),
            "scope": get_scope_string(),
        }
        if include_refresh_token and self.refresh_token:
            response["refresh_token"] = self.refresh_token
        return response


@dataclass
class ProxyAuthorizationCode:
    """Google tokens parked under a proxy-minted one-time code."""
    tokens: GoogleTokens
    created_at: float = field(default_factory=time.time)


@dataclass
class RegisteredClient:
    """Dynamic client registration record. Not consulted by the authorization flow."""
    client_id: str
    client_name: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_registration_response(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_id_issued_at": int(self.created_at),
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }


@dataclass
class TokenInfo:
    """Subset of Google's tokeninfo response used for Bearer validation."""
    scopes: List[str] = field(default_factory=list)
    email: Optional[str] = None
    expires_in: Optional[int] = None

    @classmethod
    def from_tokeninfo(cls, payload: Dict[str, Any]) -> "TokenInfo":
        expires_in = payload.get("expires_in")
        return cls(
            scopes=parse_scope_string(payload.get("scope", "")),
            email=payload.get("email"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )
