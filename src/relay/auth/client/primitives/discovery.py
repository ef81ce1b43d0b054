"""Locating the authorization server behind a remote MCP server.

Protected resource metadata (RFC 9728) names the authorization server, whose
own metadata (RFC 8414, or OpenID Connect discovery) lists the endpoints.
Servers that predate RFC 9728 act as their own authorization server, and
when they publish nothing at all the conventional /authorize, /token and
/register endpoints at their origin are assumed.
"""

from __future__ import annotations

import logging
import re
from typing import Mapping, TypeVar
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ValidationError

from relay.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
    ProtectedResourceMetadata,
)
from relay.auth.client.models.errors import (
    AuthorizationServerMetadataError,
    DiscoveryError,
    ProtectedResourceMetadataError,
)

logger = logging.getLogger(__name__)

PRM_SUFFIX = "/.well-known/oauth-protected-resource"
OAUTH_SUFFIX = "/.well-known/oauth-authorization-server"
OIDC_SUFFIX = "/.well-known/openid-configuration"

_HINT = re.compile(r'resource_metadata=(?:"([^"]+)"|([^\s,]+))')

M = TypeVar("M", bound=BaseModel)


def resource_metadata_hint(headers: Mapping[str, str]) -> str | None:
    """``resource_metadata`` parameter of a WWW-Authenticate challenge, if any."""
    challenge = headers.get("WWW-Authenticate")
    if not challenge:
        return None
    found = _HINT.search(challenge)
    return (found.group(1) or found.group(2)) if found else None


def _split(url: str) -> tuple[str, str]:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}", parsed.path.rstrip("/")


def protected_resource_urls(server_url: str) -> list[str]:
    """Path-specific location first, then the origin-wide one."""
    origin, path = _split(server_url)
    urls = [f"{origin}{PRM_SUFFIX}{path}"] if path else []
    return urls + [f"{origin}{PRM_SUFFIX}"]


def authorization_server_urls(issuer: str) -> list[str]:
    """Candidates in RFC 8414 order, OpenID Connect variants after OAuth ones."""
    origin, path = _split(issuer)
    if not path:
        return [f"{origin}{OAUTH_SUFFIX}", f"{origin}{OIDC_SUFFIX}"]
    return [
        f"{origin}{OAUTH_SUFFIX}{path}",
        f"{origin}{OAUTH_SUFFIX}",
        f"{origin}{OIDC_SUFFIX}{path}",
        f"{origin}{path}{OIDC_SUFFIX}",
        f"{origin}{OIDC_SUFFIX}",
    ]


class OAuth2Discovery:
    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def discover_from_401(self, response: httpx.Response) -> DiscoveryResult:
        """Discovery driven by a server's 401 challenge.

        A ``resource_metadata`` hint is fetched directly; without one this is
        the same as :meth:`discover_from_url` on the request URL.
        """
        if response.status_code != 401:
            raise DiscoveryError(f"Expected 401 response, got {response.status_code}")

        server_url = str(response.request.url)
        hint = resource_metadata_hint(response.headers)
        if hint is None:
            return await self.discover_from_url(server_url)

        logger.debug(f"Server advertised resource metadata at {hint}")
        prm = await self._fetch(
            [hint], ProtectedResourceMetadata, ProtectedResourceMetadataError
        )
        return await self._with_authorization_server(server_url, prm)

    async def discover_from_url(self, server_url: str) -> DiscoveryResult:
        try:
            prm = await self._fetch(
                protected_resource_urls(server_url),
                ProtectedResourceMetadata,
                ProtectedResourceMetadataError,
            )
        except ProtectedResourceMetadataError:
            logger.info(
                f"{server_url} publishes no protected resource metadata, "
                "treating it as its own authorization server"
            )
            return await self._legacy(server_url)
        return await self._with_authorization_server(server_url, prm)

    async def close(self) -> None:
        await self._http_client.aclose()

    async def _with_authorization_server(
        self, server_url: str, prm: ProtectedResourceMetadata
    ) -> DiscoveryResult:
        issuer = str(prm.authorization_servers[0])
        metadata = await self._fetch(
            authorization_server_urls(issuer),
            AuthorizationServerMetadata,
            AuthorizationServerMetadataError,
        )
        return DiscoveryResult(
            server_url=server_url,
            authorization_server_metadata=metadata,
            auth_server_url=issuer,
            protected_resource_metadata=prm,
        )

    async def _legacy(self, server_url: str) -> DiscoveryResult:
        origin, _ = _split(server_url)
        try:
            metadata = await self._fetch(
                authorization_server_urls(origin),
                AuthorizationServerMetadata,
                AuthorizationServerMetadataError,
            )
        except AuthorizationServerMetadataError:
            logger.info(f"No authorization server metadata at {origin}, using defaults")
            metadata = AuthorizationServerMetadata.default_for(server_url)
        return DiscoveryResult(
            server_url=server_url,
            authorization_server_metadata=metadata,
            auth_server_url=origin,
        )

    async def _fetch(
        self, urls: list[str], model: type[M], error: type[DiscoveryError]
    ) -> M:
        """First candidate that answers 200 with a valid document.

        A 5xx ends the search: the server exists but is broken, and later
        candidates live on the same host.
        """
        for url in urls:
            try:
                response = await self._http_client.get(url)
            except httpx.RequestError as e:
                logger.debug(f"{url}: {e}")
                continue
            if response.status_code >= 500:
                logger.debug(f"{url}: server error {response.status_code}")
                break
            if response.status_code != 200:
                continue
            try:
                document = model.model_validate_json(response.text)
            except ValidationError as e:
                logger.debug(f"{url}: invalid {model.__name__}: {e}")
                continue
            logger.debug(f"Found {model.__name__} at {url}")
            return document

        raise error(f"No valid {model.__name__} found. Tried URLs: {urls}")
