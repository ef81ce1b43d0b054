"""Dynamic client registration (RFC 7591).

The proxy has no pre-provisioned client at servers it has never seen, so it
registers itself as a public client on first contact.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from relay.auth.client.models.errors import RegistrationError
from relay.auth.client.models.registration import ClientInformation, ClientMetadata

logger = logging.getLogger(__name__)

_ERROR_MESSAGES = {
    "invalid_client_metadata": "Invalid client metadata",
    "invalid_redirect_uri": "Invalid redirect URI",
    "invalid_client_uri": "Invalid client URI",
}


class OAuth2Registration:
    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def register_client(
        self,
        registration_endpoint: str,
        client_metadata: ClientMetadata,
        initial_access_token: str | None = None,
    ) -> ClientInformation:
        """POST ``client_metadata`` and return what the server issued.

        ``initial_access_token`` is only needed for endpoints that restrict
        registration. Every failure, including transport errors and malformed
        success bodies, raises RegistrationError.
        """
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if initial_access_token:
            headers["Authorization"] = f"Bearer {initial_access_token}"

        try:
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise RegistrationError(f"HTTP error during registration: {e}") from e

        if response.status_code not in (200, 201):
            raise _registration_failure(response)

        try:
            issued = response.json()
        except ValueError as e:
            raise RegistrationError(f"Invalid registration response format: {e}") from e
        if not isinstance(issued, dict) or "client_id" not in issued:
            raise RegistrationError("Registration response missing required client_id")

        # Servers may echo only what they changed; keep the rest of what was sent.
        record = {**client_metadata.model_dump(exclude_none=True, mode="json"), **issued}
        try:
            client_info = ClientInformation.model_validate(record)
        except ValidationError as e:
            raise RegistrationError(f"Invalid registration response format: {e}") from e

        logger.info(f"Registered client {client_info.client_id} at {registration_endpoint}")
        return client_info

    async def close(self) -> None:
        await self._http_client.aclose()


def _registration_failure(response: httpx.Response) -> RegistrationError:
    """RFC 7591 Section 3.2.2 error body, or the raw status for anything else."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return RegistrationError(
            f"Registration failed with HTTP {response.status_code}: {response.text}"
        )

    code = body.get("error", "unknown_error")
    description = body.get("error_description", "No description provided")
    logger.error(f"Client registration rejected ({response.status_code}): {code} - {description}")

    if code in _ERROR_MESSAGES:
        return RegistrationError(f"{_ERROR_MESSAGES[code]}: {description}")
    if response.status_code == 401:
        return RegistrationError(
            "Registration endpoint requires authentication (initial access token)"
        )
    if response.status_code == 403:
        return RegistrationError("Registration forbidden by authorization server policy")
    return RegistrationError(
        f"Registration failed ({response.status_code}): {code} - {description}"
    )
