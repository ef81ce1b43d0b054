"""Discovery-related models for OAuth 2.1 server metadata.

Contains models for Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414) discovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, ConfigDict, Field


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""

    model_config = ConfigDict(extra="allow")

    resource: str | None = None
    authorization_servers: list[str] = Field(min_length=1)
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = None


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""

    model_config = ConfigDict(extra="allow")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    response_types_supported: list[str] = Field(default_factory=lambda: ["code"])
    code_challenge_methods_supported: list[str] | None = None
    registration_endpoint: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None

    @classmethod
    def default_for(cls, server_url: str) -> AuthorizationServerMetadata:
        """Default endpoints for servers that publish no metadata at all.

        Older MCP servers host /authorize, /token and /register at the origin.
        """
        parsed = urlparse(server_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        return cls(
            issuer=origin,
            authorization_endpoint=urljoin(origin, "/authorize"),
            token_endpoint=urljoin(origin, "/token"),
            registration_endpoint=urljoin(origin, "/register"),
            code_challenge_methods_supported=["S256"],
        )


@dataclass(frozen=True)
class DiscoveryResult:
    """Complete discovery results for an MCP server.

    ``protected_resource_metadata`` is None for legacy servers that publish
    only authorization server metadata (or nothing at all).
    """

    server_url: str
    authorization_server_metadata: AuthorizationServerMetadata
    auth_server_url: str
    protected_resource_metadata: ProtectedResourceMetadata | None = None

    @property
    def legacy(self) -> bool:
        return self.protected_resource_metadata is None

    def get_resource_url(self) -> str:
        """Get the resource URL for the RFC 8707 resource parameter.

        Uses the resource advertised by the server when there is one, else the
        canonical server URL.
        """
        if self.protected_resource_metadata and self.protected_resource_metadata.resource:
            return self.protected_resource_metadata.resource

        parsed = urlparse(self.server_url)
        canonical = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
        if parsed.path and parsed.path != "/":
            canonical += parsed.path.rstrip("/")

        return canonical
