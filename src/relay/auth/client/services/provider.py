"""Per-process credential provider for a remote server.

The provider is the only surface the authorization flow uses to reach stored
credentials. It resolves client information and tokens through an ordered
chain of sources (static configuration, environment overrides, the on-disk
store), remembers whether anything came from the environment, and refuses to
open a browser when it did.
"""

from __future__ import annotations

import logging
import sys
import webbrowser
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Mapping, Protocol, TypeVar
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import BaseModel

from relay.auth.client.models.errors import (
    AuthorizationError,
    BrowserLaunchError,
    CredentialStorageError,
    NonInteractiveModeError,
    SessionMissingError,
    UnknownCredentialScopeError,
)
from relay.auth.client.models.registration import ClientInformation, ClientMetadata
from relay.auth.client.models.tokens import OAuthTokens
from relay.auth.client.primitives.environment import (
    CLIENT_INFO_ENV,
    TOKENS_ENV,
    read_override,
)
from relay.auth.client.primitives.storage import (
    ArtifactKind,
    CredentialStore,
    server_identity,
)
from relay.auth.client.services.security import generate_state
from relay.version import VERSION

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "Relay MCP Client"
DEFAULT_CLIENT_URI = "https://github.com/modelcontextprotocol"
DEFAULT_SOFTWARE_ID = "6f0c5d1e-3a4b-4d8e-9b1f-0c2a7e4d9f31"

NON_INTERACTIVE_MESSAGE = (
    "OAuth credentials were provided via environment variables but are expired "
    "or invalid, and token refresh failed. Browser-based authorization is not "
    "available in non-interactive mode. Refresh the credentials locally and "
    "update the environment variables."
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CredentialScope(str, Enum):
    ALL = "all"
    CLIENT = "client"
    TOKENS = "tokens"
    VERIFIER = "verifier"


_SCOPE_ARTIFACTS: dict[CredentialScope, tuple[ArtifactKind, ...]] = {
    CredentialScope.ALL: (
        ArtifactKind.CLIENT_INFO,
        ArtifactKind.TOKENS,
        ArtifactKind.CODE_VERIFIER,
    ),
    CredentialScope.CLIENT: (ArtifactKind.CLIENT_INFO,),
    CredentialScope.TOKENS: (ArtifactKind.TOKENS,),
    CredentialScope.VERIFIER: (ArtifactKind.CODE_VERIFIER,),
}


class CredentialSource(Protocol[ModelT]):
    """One link in a precedence chain."""

    name: str
    from_env: bool

    def load(self) -> ModelT | None: ...


class StaticSource(Generic[ModelT]):
    """Value handed in by the caller, e.g. from a CLI flag."""

    name = "static configuration"
    from_env = False

    def __init__(self, value: ModelT | None):
        self._value = value

    def load(self) -> ModelT | None:
        return self._value


class EnvironmentSource(Generic[ModelT]):
    """Environment override, read once per provider."""

    name = "environment"
    from_env = True

    def __init__(
        self,
        variable: str,
        schema: type[ModelT],
        environ: Mapping[str, str] | None = None,
    ):
        self.variable = variable
        self._schema = schema
        self._environ = environ
        self._loaded = False
        self._value: ModelT | None = None

    def load(self) -> ModelT | None:
        if not self._loaded:
            self._value = read_override(self.variable, self._schema, self._environ)
            self._loaded = True
        return self._value


class StoreSource(Generic[ModelT]):
    """On-disk credential store, read on every call."""

    name = "credential store"
    from_env = False

    def __init__(self, store: CredentialStore, identity: str, kind: ArtifactKind):
        self._store = store
        self._identity = identity
        self._kind = kind

    def load(self) -> ModelT | None:
        return self._store.read(self._identity, self._kind)


@dataclass
class OAuthProviderOptions:
    """Configuration for one provider instance."""

    server_url: str
    callback_port: int
    host: str = "localhost"
    callback_path: str = "/oauth/callback"
    client_name: str = DEFAULT_CLIENT_NAME
    client_uri: str = DEFAULT_CLIENT_URI
    software_id: str = DEFAULT_SOFTWARE_ID
    software_version: str = VERSION
    static_client_metadata: dict[str, Any] | None = None
    static_client_info: ClientInformation | None = None
    authorize_resource: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


def _print_to_stderr(message: str) -> None:
    # stdout carries the stdio protocol, so user prompts go to stderr.
    print(message, file=sys.stderr, flush=True)


class OAuthClientProvider:
    """Credential façade used by the OAuth flow of one process.

    Precedence is static configuration > environment override > on-disk store
    for client information, and environment override > on-disk store for
    tokens. Construct one per process and pass it to whatever needs it; the
    non-interactive flags live on the instance, never in module state.
    """

    def __init__(
        self,
        options: OAuthProviderOptions,
        store: CredentialStore | None = None,
        environ: Mapping[str, str] | None = None,
        browser: Callable[[str], bool] | None = None,
        notify: Callable[[str], None] | None = None,
    ):
        self.options = options
        self.store = store or CredentialStore()
        self.server_identity = server_identity(
            options.server_url, options.authorize_resource, options.headers
        )
        self._open_browser = browser or webbrowser.open
        self._notify = notify or _print_to_stderr
        self._state = generate_state()

        self._tokens_from_env = False
        self._client_info_from_env = False
        self.diagnostics: list[str] = []

        self._client_sources: list[CredentialSource[ClientInformation]] = [
            StaticSource(options.static_client_info),
            EnvironmentSource(CLIENT_INFO_ENV, ClientInformation, environ),
            StoreSource(self.store, self.server_identity, ArtifactKind.CLIENT_INFO),
        ]
        self._token_sources: list[CredentialSource[OAuthTokens]] = [
            EnvironmentSource(TOKENS_ENV, OAuthTokens, environ),
            StoreSource(self.store, self.server_identity, ArtifactKind.TOKENS),
        ]

    @property
    def redirect_url(self) -> str:
        return (
            f"http://{self.options.host}:{self.options.callback_port}"
            f"{self.options.callback_path}"
        )

    @property
    def client_metadata(self) -> ClientMetadata:
        """Metadata for dynamic registration, with static overrides applied."""
        metadata: dict[str, Any] = {
            "redirect_uris": [self.redirect_url],
            "token_endpoint_auth_method": "none",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "client_name": self.options.client_name,
            "client_uri": self.options.client_uri,
            "software_id": self.options.software_id,
            "software_version": self.options.software_version,
        }
        metadata.update(self.options.static_client_metadata or {})
        return ClientMetadata.model_validate(metadata)

    @property
    def tokens_from_env(self) -> bool:
        return self._tokens_from_env

    @property
    def client_info_from_env(self) -> bool:
        return self._client_info_from_env

    @property
    def non_interactive(self) -> bool:
        """Any credential came from the environment; browser flows are off."""
        return self._tokens_from_env or self._client_info_from_env

    def state(self) -> str:
        return self._state

    async def get_client_registration(self) -> ClientInformation | None:
        logger.debug("Reading client info")
        client_info, source = self._resolve(self._client_sources)
        if source is not None and source.from_env:
            self._client_info_from_env = True
        logger.debug(
            f"Client info result: {'found in ' + source.name if source else 'not found'}"
        )
        return client_info

    async def save_client_registration(self, client_info: ClientInformation) -> None:
        """Persist client information.

        Always writes to the store, whatever the original source: a fresh
        dynamic registration supersedes anything seen before.
        """
        logger.debug(f"Saving client info for client_id={client_info.client_id}")
        self._write(ArtifactKind.CLIENT_INFO, client_info)

    async def get_tokens(self) -> OAuthTokens | None:
        logger.debug("Reading OAuth tokens")
        tokens, source = self._resolve(self._token_sources)

        if tokens is None:
            logger.debug("Token result: not found")
            return None

        if source.from_env:
            self._tokens_from_env = True
        else:
            self._check_expiry(tokens, "reading tokens")

        logger.debug(
            f"Token result: found in {source.name}, "
            f"has_refresh_token={tokens.can_refresh()}, "
            f"expires_in={tokens.expires_in}"
        )
        return tokens

    async def save_tokens(self, tokens: OAuthTokens) -> None:
        """Persist tokens. An invalid ``expires_in`` is flagged, never rejected."""
        self._check_expiry(tokens, "saving tokens")
        logger.debug(
            f"Saving tokens: has_refresh_token={tokens.can_refresh()}, "
            f"expires_in={tokens.expires_in}"
        )
        self._write(ArtifactKind.TOKENS, tokens)

    async def save_code_verifier(self, code_verifier: str) -> None:
        logger.debug("Saving code verifier")
        self._write(ArtifactKind.CODE_VERIFIER, code_verifier)

    async def get_code_verifier(self) -> str:
        """Return the PKCE verifier saved for this authorization attempt.

        Raises:
            SessionMissingError: If no verifier was saved
        """
        verifier = self.store.read(self.server_identity, ArtifactKind.CODE_VERIFIER)
        if verifier is None:
            raise SessionMissingError(
                f"No code verifier saved for session (server {self.options.server_url})"
            )
        return verifier

    async def initiate_authorization(self, authorization_url: str) -> str:
        """Send the user to the authorization URL.

        Returns:
            The URL that was opened or shown, with the resource indicator added

        Raises:
            NonInteractiveModeError: If any credential came from the environment
            AuthorizationError: If the URL is not http(s)
        """
        if self.non_interactive:
            logger.debug(
                f"Refusing interactive authorization: "
                f"tokens_from_env={self._tokens_from_env}, "
                f"client_info_from_env={self._client_info_from_env}"
            )
            raise NonInteractiveModeError(NON_INTERACTIVE_MESSAGE)

        url = self._with_resource(authorization_url)
        self._notify(f"\nPlease authorize this client by visiting:\n{url}\n")

        try:
            self._launch_browser(url)
        except BrowserLaunchError as e:
            logger.debug(f"Failed to open browser: {e}")
            self._notify(
                "Could not open browser automatically. "
                "Please copy and paste the URL above into your browser."
            )
        else:
            self._notify("Browser opened automatically.")

        return url

    async def invalidate(self, scope: CredentialScope | str) -> None:
        """Delete stored credentials for ``scope``.

        Raises:
            UnknownCredentialScopeError: If ``scope`` is not a CredentialScope
        """
        try:
            scope = CredentialScope(scope)
        except ValueError:
            raise UnknownCredentialScopeError(
                f"Unknown credential scope: {scope!r}"
            ) from None

        logger.debug(f"Invalidating credentials: {scope.value}")
        for kind in _SCOPE_ARTIFACTS[scope]:
            if not self.store.delete(self.server_identity, kind):
                raise CredentialStorageError(
                    f"Could not delete {kind.filename} for {self.options.server_url}"
                )
        logger.info(f"Invalidated {scope.value} credentials for {self.options.server_url}")

    def _resolve(
        self, sources: list[CredentialSource[ModelT]]
    ) -> tuple[ModelT | None, CredentialSource[ModelT] | None]:
        for source in sources:
            value = source.load()
            if value is not None:
                return value, source
        return None, None

    def _write(self, kind: ArtifactKind, artifact: BaseModel | str) -> None:
        if not self.store.write(self.server_identity, kind, artifact):
            raise CredentialStorageError(
                f"Could not save {kind.filename} for {self.options.server_url}"
            )

    def _check_expiry(self, tokens: OAuthTokens, context: str) -> None:
        if tokens.has_valid_expiry():
            return
        diagnostic = f"Invalid expires_in={tokens.expires_in!r} detected while {context}"
        self.diagnostics.append(diagnostic)
        logger.warning(diagnostic)

    def _with_resource(self, authorization_url: str) -> str:
        parsed = urlparse(authorization_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise AuthorizationError(
                f"Refusing to open non-HTTP authorization URL: {authorization_url}"
            )
        if not self.options.authorize_resource:
            return authorization_url

        query = [(k, v) for k, v in parse_qsl(parsed.query) if k != "resource"]
        query.append(("resource", self.options.authorize_resource))
        return urlunparse(parsed._replace(query=urlencode(query)))

    def _launch_browser(self, url: str) -> None:
        try:
            opened = self._open_browser(url)
        except (webbrowser.Error, OSError) as e:
            raise BrowserLaunchError(str(e)) from e
        if not opened:
            raise BrowserLaunchError("No runnable browser found")
