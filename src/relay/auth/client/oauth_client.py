"""OAuth orchestration for a proxied remote server.

Ties the credential provider and the instance coordinator to discovery,
registration, the browser round trip and the token endpoint. Everything that
may write tokens or client information runs while holding the server's
authorization lock, so concurrent processes do not race each other through
refreshes or open several browser windows.
"""

from __future__ import annotations

import logging

import httpx

from relay.auth.client.models.discovery import DiscoveryResult
from relay.auth.client.models.errors import (
    AuthorizationError,
    NonInteractiveModeError,
    RegistrationError,
    TokenError,
)
from relay.auth.client.models.registration import ClientInformation
from relay.auth.client.models.tokens import (
    OAuthTokens,
    RefreshTokenRequest,
    TokenRequest,
)
from relay.auth.client.primitives.discovery import OAuth2Discovery
from relay.auth.client.primitives.pkce import generate_pkce_parameters
from relay.auth.client.services.callback import CallbackServer
from relay.auth.client.services.coordination import (
    DEFAULT_AUTH_TIMEOUT,
    InstanceCoordinator,
)
from relay.auth.client.services.flow import OAuth2FlowManager
from relay.auth.client.services.provider import (
    NON_INTERACTIVE_MESSAGE,
    CredentialScope,
    OAuthClientProvider,
)
from relay.auth.client.services.registration import OAuth2Registration
from relay.auth.client.services.security import is_loopback_redirect
from relay.auth.client.services.tokens import OAuth2TokenManager

logger = logging.getLogger(__name__)


class RemoteAuthenticator:
    """Obtains usable tokens for one remote server.

    Args:
        provider: Credential provider of this process
        coordinator: Coordinator shared by all flows of this process
        scope: Optional OAuth scope to request
        auth_timeout: Seconds to wait for the browser round trip, and for
            another process's round trip when not the owner
        timeout: HTTP request timeout
        callback_server: Redirect receiver, built from the provider's
            redirect URL when omitted
    """

    def __init__(
        self,
        provider: OAuthClientProvider,
        coordinator: InstanceCoordinator,
        scope: str | None = None,
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
        timeout: float = 30.0,
        callback_server: CallbackServer | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.provider = provider
        self.coordinator = coordinator
        self.scope = scope
        self.auth_timeout = auth_timeout

        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.discovery = OAuth2Discovery(timeout=timeout, http_client=self._http_client)
        self.registration = OAuth2Registration(
            timeout=timeout, http_client=self._http_client
        )
        self.token_manager = OAuth2TokenManager(
            timeout=timeout, http_client=self._http_client
        )
        self.flow_manager = OAuth2FlowManager()
        self.callback_server = callback_server or CallbackServer(
            host=provider.options.host,
            port=provider.options.callback_port,
            path=provider.options.callback_path,
        )
        self._discovery_result: DiscoveryResult | None = None

    async def authenticate(self) -> OAuthTokens:
        """Return stored tokens, or authorize if there are none.

        Stored tokens are returned without touching the authorization lock;
        judging their freshness is left to the remote server.
        """
        tokens = await self.provider.get_tokens()
        if tokens is not None:
            return tokens
        return await self.authorize()

    async def authorize(self, rejected: OAuthTokens | None = None) -> OAuthTokens:
        """Get new tokens after ``rejected`` failed (or none existed).

        Runs under the authorization lock. A process that has to wait re-reads
        the store once the owner is done and tries once more itself if the
        owner left nothing usable behind.

        Raises:
            NonInteractiveModeError: If credentials came from the environment
                and a browser would be needed
            CoordinationTimeoutError: If another process held the lock too long
            OAuth2Error: If discovery, registration or token exchange failed
        """
        identity = self.provider.server_identity
        port = self.provider.options.callback_port

        for _ in range(2):
            async with self.coordinator.ownership(
                identity, port, timeout=self.auth_timeout
            ) as lease:
                if lease is not None:
                    return await self._authorize_as_owner(rejected)

                tokens = await self._replacement_tokens(rejected)
                if tokens is not None:
                    logger.info("Using tokens obtained by another process")
                    return tokens
                logger.info("Other process finished without usable tokens, retrying")

        raise AuthorizationError(
            f"Could not obtain tokens for {self.provider.options.server_url}"
        )

    async def logout(self) -> None:
        await self.provider.invalidate(CredentialScope.ALL)

    async def close(self) -> None:
        await self._http_client.aclose()

    async def _replacement_tokens(
        self, rejected: OAuthTokens | None
    ) -> OAuthTokens | None:
        tokens = await self.provider.get_tokens()
        if tokens is None:
            return None
        if rejected is not None and tokens.access_token == rejected.access_token:
            return None
        return tokens

    async def _authorize_as_owner(self, rejected: OAuthTokens | None) -> OAuthTokens:
        replacement = await self._replacement_tokens(rejected)
        if replacement is not None:
            return replacement

        candidate = rejected or await self.provider.get_tokens()
        if candidate is not None and candidate.can_refresh():
            refreshed = await self._refresh(candidate)
            if refreshed is not None:
                return refreshed

        return await self._authorize_interactively()

    async def _refresh(self, tokens: OAuthTokens) -> OAuthTokens | None:
        """Refresh ``tokens``; None means fall back to interactive authorization."""
        client_info = await self.provider.get_client_registration()
        if client_info is None:
            logger.info("No client information, cannot refresh tokens")
            return None

        try:
            discovery = await self._discover()
            response = await self.token_manager.refresh_access_token(
                RefreshTokenRequest(
                    token_endpoint=discovery.authorization_server_metadata.token_endpoint,
                    refresh_token=tokens.refresh_token,
                    client_id=client_info.client_id,
                    client_secret=client_info.client_secret,
                    resource=self._resource(discovery),
                    scope=self.scope,
                )
            )
        except TokenError as e:
            logger.warning(f"Token refresh failed: {e}")
            return None

        if response.is_success():
            refreshed = response.to_tokens(previous_refresh_token=tokens.refresh_token)
            await self.provider.save_tokens(refreshed)
            return refreshed

        if response.is_invalid_grant():
            # Another process may have rotated the refresh token under us.
            stored = await self.provider.get_tokens()
            if stored is not None and stored.refresh_token != tokens.refresh_token:
                logger.info("Refresh token was rotated by another process")
                return stored

        if not self.provider.tokens_from_env:
            await self.provider.invalidate(CredentialScope.TOKENS)
        return None

    async def _authorize_interactively(self) -> OAuthTokens:
        if self.provider.non_interactive:
            raise NonInteractiveModeError(NON_INTERACTIVE_MESSAGE)
        if not is_loopback_redirect(self.provider.redirect_url):
            raise AuthorizationError(
                f"Redirect URL {self.provider.redirect_url} is not a local address"
            )

        discovery = await self._discover()
        client_info = await self._client_information(discovery)

        pkce = generate_pkce_parameters()
        await self.provider.save_code_verifier(pkce.code_verifier)
        state = self.provider.state()
        authorization_url = self.flow_manager.build_authorization_url(
            discovery,
            client_info.client_id,
            self.provider.redirect_url,
            pkce,
            state,
            self.scope,
        )

        async with self.callback_server:
            await self.provider.initiate_authorization(authorization_url)
            params = await self.callback_server.wait_for_callback(self.auth_timeout)

        callback = self.flow_manager.parse_callback(params, state)
        code_verifier = await self.provider.get_code_verifier()

        response = await self.token_manager.exchange_code_for_token(
            TokenRequest(
                token_endpoint=discovery.authorization_server_metadata.token_endpoint,
                code=callback.code,
                redirect_uri=self.provider.redirect_url,
                client_id=client_info.client_id,
                code_verifier=code_verifier,
                client_secret=client_info.client_secret,
                resource=self._resource(discovery),
            )
        )
        if not response.is_success():
            raise TokenError(
                f"Token exchange failed: {response.error} - "
                f"{response.error_description or 'No description provided'}"
            )

        tokens = response.to_tokens()
        await self.provider.save_tokens(tokens)
        await self.provider.invalidate(CredentialScope.VERIFIER)
        logger.info(f"Authorized with {self.provider.options.server_url}")
        return tokens

    async def _client_information(self, discovery: DiscoveryResult) -> ClientInformation:
        client_info = await self.provider.get_client_registration()
        if client_info is not None:
            return client_info

        endpoint = discovery.authorization_server_metadata.registration_endpoint
        if not endpoint:
            raise RegistrationError(
                f"{discovery.auth_server_url} does not support dynamic client "
                f"registration; provide static client information instead"
            )

        client_info = await self.registration.register_client(
            endpoint, self.provider.client_metadata
        )
        await self.provider.save_client_registration(client_info)
        return client_info

    async def _discover(self) -> DiscoveryResult:
        if self._discovery_result is None:
            self._discovery_result = await self.discovery.discover_from_url(
                self.provider.options.server_url
            )
        return self._discovery_result

    def _resource(self, discovery: DiscoveryResult) -> str | None:
        return None if discovery.legacy else discovery.get_resource_url()
