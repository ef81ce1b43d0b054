"""Client registration models for OAuth 2.0 Dynamic Client Registration.

Contains the metadata a client sends when registering (RFC 7591) and the
client information issued back by the authorization server.
"""

from __future__ import annotations

import time
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClientMetadata(BaseModel):
    """OAuth 2.0 Client Metadata for dynamic registration (RFC 7591).

    Unknown keys are kept so static metadata overrides pass through untouched.
    """

    model_config = ConfigDict(extra="allow")

    client_name: str
    redirect_uris: list[str] = Field(min_length=1)

    # Optional metadata
    client_uri: str | None = None
    logo_uri: str | None = None
    scope: str | None = None
    contacts: list[str] | None = None
    tos_uri: str | None = None
    policy_uri: str | None = None
    software_id: str | None = None
    software_version: str | None = None

    # Public client using authorization code + refresh
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: list[str] = Field(default_factory=lambda: ["code"])

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Redirect URIs must use HTTPS or a loopback host."""
        for uri in v:
            parsed = urlparse(uri)
            if parsed.scheme == "http" and parsed.hostname not in (
                "localhost",
                "127.0.0.1",
                "::1",
            ):
                raise ValueError(f"Redirect URI must use HTTPS or localhost: {uri}")
        return v


class ClientInformation(BaseModel):
    """Client information issued by the authorization server.

    Holds the credentials from the registration response together with the
    metadata the server echoed back. Immutable once issued; replaced only by a
    fresh registration or removed by invalidation.
    """

    model_config = ConfigDict(extra="allow")

    client_id: str = Field(min_length=1)
    client_secret: str | None = None  # None for public clients
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None
    registration_access_token: str | None = None
    registration_client_uri: str | None = None

    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    token_endpoint_auth_method: str | None = None
    client_name: str | None = None
    client_uri: str | None = None
    scope: str | None = None
    software_id: str | None = None
    software_version: str | None = None

    def is_expired(self) -> bool:
        """Check if the client secret has expired.

        RFC 7591 uses 0 for "never expires".
        """
        if not self.client_secret_expires_at:
            return False
        return time.time() >= self.client_secret_expires_at
