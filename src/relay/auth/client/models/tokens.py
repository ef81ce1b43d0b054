"""Token models for OAuth 2.1.

Contains the persisted token set plus the token endpoint request and response
shapes used for code exchange and refresh.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OAuthTokens(BaseModel):
    """Token set issued by the authorization server.

    Persisted per server and shared by every process talking to it. Whatever
    ``expires_in`` holds is kept verbatim: a negative or non-numeric value is
    an integrity warning for callers, not a reason to drop the tokens.
    Unset fields stay unset, so a token set reads back exactly as stored.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(min_length=1)
    token_type: str | None = None
    expires_in: Any = None  # Seconds until expiry, unvalidated
    refresh_token: str | None = None
    scope: str | None = None

    def has_valid_expiry(self) -> bool:
        """True when ``expires_in`` is absent or a non-negative number."""
        value = self.expires_in
        if value is None:
            return True
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= 0

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def to_storage(self) -> dict[str, Any]:
        """Serialize only the fields that were actually provided."""
        return self.model_dump(mode="json", exclude_unset=True)


@dataclass(frozen=True)
class _TokenEndpointRequest:
    token_endpoint: str
    client_id: str

    client_secret: str | None = None
    resource: str | None = None  # RFC 8707
    scope: str | None = None

    def _grant(self) -> dict[str, str]:
        raise NotImplementedError

    def to_form_data(self) -> dict[str, str]:
        """application/x-www-form-urlencoded body; unset optionals are left out."""
        data = self._grant()
        data["client_id"] = self.client_id
        optional = {
            "client_secret": self.client_secret,
            "resource": self.resource,
            "scope": self.scope,
        }
        data.update({key: value for key, value in optional.items() if value})
        return data


@dataclass(frozen=True, kw_only=True)
class TokenRequest(_TokenEndpointRequest):
    """Authorization code grant with its PKCE verifier (RFC 6749 4.1.3)."""

    code: str
    redirect_uri: str
    code_verifier: str

    def _grant(self) -> dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": self.code_verifier,
        }


@dataclass(frozen=True, kw_only=True)
class RefreshTokenRequest(_TokenEndpointRequest):
    refresh_token: str

    def _grant(self) -> dict[str, str]:
        return {"grant_type": "refresh_token", "refresh_token": self.refresh_token}


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Covers both successful responses (5.1) and error responses (5.2).
    """

    model_config = ConfigDict(extra="allow")

    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | float | None = None
    refresh_token: str | None = None
    scope: str | None = None

    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    def is_invalid_grant(self) -> bool:
        """The refresh token was rejected, e.g. reused after rotation."""
        return self.error == "invalid_grant"

    def to_tokens(self, previous_refresh_token: str | None = None) -> OAuthTokens:
        """Convert a successful response into a persistable token set.

        Servers that do not rotate refresh tokens omit them on refresh, so the
        previous one is carried over.

        Raises:
            ValueError: If the response is an error response
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to OAuthTokens")

        data = self.model_dump(
            exclude_unset=True,
            exclude={"error", "error_description", "error_uri"},
        )
        if not data.get("refresh_token") and previous_refresh_token:
            data["refresh_token"] = previous_refresh_token
        return OAuthTokens.model_validate(data)
