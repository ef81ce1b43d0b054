"""Tests for OAuth discovery.

URL parsing and building is tested directly; the well-known lookups run
against an httpx mock transport.
"""

import json

import httpx
import pytest

from relay.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
    ProtectedResourceMetadata,
)
from relay.auth.client.models.errors import DiscoveryError
from relay.auth.client.primitives.discovery import (
    OAuth2Discovery,
    authorization_server_urls,
    protected_resource_urls,
    resource_metadata_hint,
)

ASM = {
    "issuer": "https://auth.example.com",
    "authorization_endpoint": "https://auth.example.com/authorize",
    "token_endpoint": "https://auth.example.com/token",
    "registration_endpoint": "https://auth.example.com/register",
}
PRM = {
    "resource": "https://mcp.example.com/mcp",
    "authorization_servers": ["https://auth.example.com"],
}


def _discovery(routes, status=404):
    """Discovery client whose GETs are answered from ``routes`` (url -> json)."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested.append(url)
        if url in routes:
            return httpx.Response(200, text=json.dumps(routes[url]))
        return httpx.Response(status)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OAuth2Discovery(http_client=client), requested


class TestResourceMetadataHint:
    @pytest.mark.parametrize(
        "header, expected",
        [
            (
                'Bearer resource_metadata="https://api.example.com/.well-known/oauth-protected-resource"',
                "https://api.example.com/.well-known/oauth-protected-resource",
            ),
            (
                "Bearer resource_metadata=https://api.example.com/.well-known/oauth-protected-resource",
                "https://api.example.com/.well-known/oauth-protected-resource",
            ),
            (
                'Bearer realm="api", error="invalid_token",'
                'resource_metadata="https://api.example.com/prm",'
                'error_description="Token expired"',
                "https://api.example.com/prm",
            ),
            ('Bearer realm="api", error="invalid_token"', None),
            ("Bearer resource_metadata=", None),
        ],
    )
    def test_challenge_parsing(self, header, expected):
        assert resource_metadata_hint({"WWW-Authenticate": header}) == expected

    def test_no_challenge(self):
        assert resource_metadata_hint({}) is None


class TestWellKnownUrls:
    def test_protected_resource_with_path(self):
        assert protected_resource_urls("https://mcp.example.com/v1/mcp/") == [
            "https://mcp.example.com/.well-known/oauth-protected-resource/v1/mcp",
            "https://mcp.example.com/.well-known/oauth-protected-resource",
        ]

    def test_protected_resource_at_root(self):
        assert protected_resource_urls("https://mcp.example.com") == [
            "https://mcp.example.com/.well-known/oauth-protected-resource",
        ]

    def test_root_authorization_server(self):
        urls = authorization_server_urls("https://auth.example.com")

        assert urls == [
            "https://auth.example.com/.well-known/oauth-authorization-server",
            "https://auth.example.com/.well-known/openid-configuration",
        ]

    def test_authorization_server_with_path(self):
        urls = authorization_server_urls("https://auth.example.com/v1/oauth/")

        assert urls == [
            "https://auth.example.com/.well-known/oauth-authorization-server/v1/oauth",
            "https://auth.example.com/.well-known/oauth-authorization-server",
            "https://auth.example.com/.well-known/openid-configuration/v1/oauth",
            "https://auth.example.com/v1/oauth/.well-known/openid-configuration",
            "https://auth.example.com/.well-known/openid-configuration",
        ]

    def test_authorization_server_with_port(self):
        urls = authorization_server_urls("https://auth.example.com:8443")

        assert urls[0] == (
            "https://auth.example.com:8443/.well-known/oauth-authorization-server"
        )


class TestResourceURLCanonicalization:
    """Test resource URL canonicalization logic in DiscoveryResult."""

    def _result(self, server_url, resource=None):
        return DiscoveryResult(
            server_url=server_url,
            protected_resource_metadata=ProtectedResourceMetadata(
                resource=resource, authorization_servers=["https://auth.example.com"]
            ),
            authorization_server_metadata=AuthorizationServerMetadata(**ASM),
            auth_server_url="https://auth.example.com",
        )

    @pytest.mark.parametrize(
        "server_url, expected",
        [
            ("https://api.example.com/mcp", "https://api.example.com/mcp"),
            ("https://api.example.com/mcp/", "https://api.example.com/mcp"),
            ("HTTPS://API.EXAMPLE.COM/MCP", "https://api.example.com/MCP"),
            ("https://api.example.com:8443/mcp", "https://api.example.com:8443/mcp"),
        ],
    )
    def test_canonical_server_url(self, server_url, expected):
        assert self._result(server_url).get_resource_url() == expected

    def test_advertised_resource_wins(self):
        result = self._result("https://api.example.com/mcp", "https://api.example.com")

        assert result.get_resource_url() == "https://api.example.com"
        assert not result.legacy


class TestDiscoverFromUrl:
    async def test_path_aware_protected_resource_metadata(self):
        # Arrange
        discovery, requested = _discovery(
            {
                "https://mcp.example.com/.well-known/oauth-protected-resource/mcp": PRM,
                "https://auth.example.com/.well-known/oauth-authorization-server": ASM,
            }
        )

        # Act
        result = await discovery.discover_from_url("https://mcp.example.com/mcp")
        await discovery.close()

        # Assert
        assert not result.legacy
        assert result.auth_server_url == "https://auth.example.com"
        assert result.authorization_server_metadata.token_endpoint == ASM["token_endpoint"]
        assert result.get_resource_url() == "https://mcp.example.com/mcp"
        assert requested[0].endswith("/.well-known/oauth-protected-resource/mcp")

    async def test_root_protected_resource_metadata(self):
        discovery, requested = _discovery(
            {
                "https://mcp.example.com/.well-known/oauth-protected-resource": PRM,
                "https://auth.example.com/.well-known/oauth-authorization-server": ASM,
            }
        )

        result = await discovery.discover_from_url("https://mcp.example.com/mcp")
        await discovery.close()

        assert not result.legacy
        assert requested[:2] == [
            "https://mcp.example.com/.well-known/oauth-protected-resource/mcp",
            "https://mcp.example.com/.well-known/oauth-protected-resource",
        ]

    async def test_openid_configuration_fallback(self):
        discovery, _ = _discovery(
            {
                "https://mcp.example.com/.well-known/oauth-protected-resource": PRM,
                "https://auth.example.com/.well-known/openid-configuration": ASM,
            }
        )

        result = await discovery.discover_from_url("https://mcp.example.com")
        await discovery.close()

        assert result.authorization_server_metadata.issuer == "https://auth.example.com"

    async def test_legacy_server_with_metadata_at_origin(self):
        # Arrange
        legacy_asm = dict(
            ASM,
            issuer="https://mcp.example.com",
            authorization_endpoint="https://mcp.example.com/oauth/authorize",
            token_endpoint="https://mcp.example.com/oauth/token",
        )
        discovery, _ = _discovery(
            {"https://mcp.example.com/.well-known/oauth-authorization-server": legacy_asm}
        )

        # Act
        result = await discovery.discover_from_url("https://mcp.example.com/sse")
        await discovery.close()

        # Assert
        assert result.legacy
        assert result.auth_server_url == "https://mcp.example.com"
        assert (
            result.authorization_server_metadata.token_endpoint
            == "https://mcp.example.com/oauth/token"
        )

    async def test_legacy_server_without_metadata_uses_defaults(self):
        discovery, _ = _discovery({})

        result = await discovery.discover_from_url("https://mcp.example.com/sse")
        await discovery.close()

        metadata = result.authorization_server_metadata
        assert result.legacy
        assert metadata.authorization_endpoint == "https://mcp.example.com/authorize"
        assert metadata.token_endpoint == "https://mcp.example.com/token"
        assert metadata.registration_endpoint == "https://mcp.example.com/register"

    async def test_missing_authorization_server_metadata_raises(self):
        discovery, _ = _discovery(
            {"https://mcp.example.com/.well-known/oauth-protected-resource": PRM}
        )

        with pytest.raises(DiscoveryError):
            await discovery.discover_from_url("https://mcp.example.com")
        await discovery.close()

    async def test_server_error_stops_probing(self):
        discovery, requested = _discovery({}, status=503)

        result = await discovery.discover_from_url("https://mcp.example.com/mcp")
        await discovery.close()

        assert result.legacy
        assert requested == [
            "https://mcp.example.com/.well-known/oauth-protected-resource/mcp",
            "https://mcp.example.com/.well-known/oauth-authorization-server",
        ]


class TestDiscoverFrom401:
    async def test_uses_resource_metadata_hint(self):
        # Arrange
        discovery, requested = _discovery(
            {
                "https://meta.example.com/prm": PRM,
                "https://auth.example.com/.well-known/oauth-authorization-server": ASM,
            }
        )
        response = httpx.Response(
            401,
            headers={
                "WWW-Authenticate": 'Bearer resource_metadata="https://meta.example.com/prm"'
            },
            request=httpx.Request("GET", "https://mcp.example.com/mcp"),
        )

        # Act
        result = await discovery.discover_from_401(response)
        await discovery.close()

        # Assert
        assert requested[0] == "https://meta.example.com/prm"
        assert result.server_url == "https://mcp.example.com/mcp"
        assert result.protected_resource_metadata.resource == PRM["resource"]

    async def test_rejects_non_401(self):
        discovery = OAuth2Discovery()
        response = httpx.Response(
            200, request=httpx.Request("GET", "https://mcp.example.com")
        )

        with pytest.raises(DiscoveryError):
            await discovery.discover_from_401(response)
        await discovery.close()
