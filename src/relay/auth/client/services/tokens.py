"""Token endpoint client for code exchange and refresh."""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from relay.auth.client.models.errors import TokenError
from relay.auth.client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Talks to the token endpoint.

    An OAuth error body (RFC 6749 Section 5.2) comes back as a TokenResponse
    with ``error`` set, since callers treat ``invalid_grant`` differently from
    other failures. TokenError is reserved for transport problems and bodies
    that are not token responses at all.
    """

    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(self, token_request: TokenRequest) -> TokenResponse:
        return await self._post(token_request, "token exchange")

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        return await self._post(refresh_request, "token refresh")

    async def _post(
        self, request: TokenRequest | RefreshTokenRequest, operation: str
    ) -> TokenResponse:
        form = request.to_form_data()
        logger.debug(
            f"{operation} at {request.token_endpoint} "
            f"(client_id={request.client_id}, resource={request.resource or 'none'})"
        )
        try:
            response = await self._http_client.post(
                request.token_endpoint, data=form, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during {operation}: {e}") from e

        try:
            token_response = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenError(f"Invalid {operation} response format: {e}") from e

        if response.status_code != 200:
            token_response.error = token_response.error or "unknown_error"
            logger.warning(
                f"{operation} rejected with {response.status_code}: {token_response.error}"
                f" - {token_response.error_description or 'No description provided'}"
            )
        elif not token_response.is_success():
            raise TokenError(f"{operation} response missing required access_token")
        else:
            logger.info(f"{operation} succeeded")
        return token_response

    async def close(self) -> None:
        await self._http_client.aclose()
