"""Authorization URL construction and redirect validation."""

from __future__ import annotations

import logging
from typing import Mapping
from urllib.parse import parse_qs, urlparse

from relay.auth.client.models.discovery import DiscoveryResult
from relay.auth.client.models.errors import (
    AuthorizationCallbackError,
    StateValidationError,
)
from relay.auth.client.models.flow import (
    AuthorizationRequest,
    AuthorizationResponse,
    PKCEParameters,
)
from relay.auth.client.services.security import validate_state

logger = logging.getLogger(__name__)


class OAuth2FlowManager:
    def build_authorization_url(
        self,
        discovery_result: DiscoveryResult,
        client_id: str,
        redirect_uri: str,
        pkce: PKCEParameters,
        state: str,
        scope: str | None = None,
    ) -> str:
        """URL the user's browser is sent to.

        Servers without protected resource metadata never see a ``resource``
        parameter; some of them reject it.
        """
        metadata = discovery_result.authorization_server_metadata
        request = AuthorizationRequest(
            authorization_endpoint=metadata.authorization_endpoint,
            client_id=client_id,
            redirect_uri=redirect_uri,
            pkce=pkce,
            state=state,
            resource=(
                None if discovery_result.legacy else discovery_result.get_resource_url()
            ),
            scope=scope,
        )
        logger.debug(f"Authorization URL prepared for client {client_id}")
        return request.build_authorization_url()

    def parse_callback(
        self, callback: str | Mapping[str, str], expected_state: str
    ) -> AuthorizationResponse:
        """Turn a redirect into a response that is known to carry a code.

        ``callback`` is either the full redirect URL or its query parameters.
        The state is checked before anything else, so an error reported under
        a foreign state surfaces as StateValidationError.

        Raises:
            StateValidationError: State missing or not ours
            AuthorizationCallbackError: Server reported an error, or sent no code
        """
        if isinstance(callback, str):
            params = _query_of(callback)
        else:
            params = callback
        response = AuthorizationResponse.from_params(params)

        try:
            validate_state(expected_state, response.state)
        except StateValidationError:
            if response.is_error():
                logger.warning(f"Ignoring {response.error} sent with unexpected state")
            raise

        if response.is_error():
            raise AuthorizationCallbackError(
                f"Authorization failed: {response.describe_error()}"
            )
        if not response.is_success():
            raise AuthorizationCallbackError(
                "Authorization callback missing both code and error"
            )

        logger.info("Received authorization code")
        return response


def _query_of(callback_url: str) -> dict[str, str]:
    try:
        parsed = parse_qs(urlparse(callback_url).query)
    except ValueError as e:
        raise AuthorizationCallbackError(f"Failed to parse callback URL: {e}") from e
    return {key: values[0] for key, values in parsed.items() if values}
