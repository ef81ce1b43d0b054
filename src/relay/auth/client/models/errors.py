"""Exception hierarchy for OAuth credential and coordination errors.

Provides specific exception types for different failure modes so callers can
tell recoverable conditions (a coordination timeout) apart from permanent ones
(a non-interactive process that needs a browser).
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth related errors."""

    pass


class DiscoveryError(OAuth2Error):
    """Raised when OAuth server discovery fails."""

    pass


class ProtectedResourceMetadataError(DiscoveryError):
    """Raised when Protected Resource Metadata discovery fails."""

    pass


class AuthorizationServerMetadataError(DiscoveryError):
    """Raised when Authorization Server Metadata discovery fails."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when dynamic client registration fails."""

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class AuthorizationCallbackError(AuthorizationError):
    """Raised when the redirect received from the authorization server is
    malformed or reports an error."""

    pass


class StateValidationError(AuthorizationCallbackError):
    """Raised when the OAuth state parameter is missing or does not match."""

    pass


class NonInteractiveModeError(AuthorizationError):
    """Raised when interactive authorization is needed but credentials were
    supplied through environment variables.

    A process fed from the environment is expected to run unattended, so it
    must never fall back to opening a browser.
    """

    pass


class BrowserLaunchError(OAuth2Error):
    """Raised when the system browser could not be opened.

    Handled inside the provider, which falls back to printing the URL.
    """

    pass


class SessionMissingError(OAuth2Error):
    """Raised when the PKCE code verifier for this session was never saved."""

    pass


class CredentialStorageError(OAuth2Error):
    """Raised when a credential artifact could not be written to disk."""

    pass


class UnknownCredentialScopeError(OAuth2Error, ValueError):
    """Raised when credentials are invalidated with an unknown scope."""

    pass


class CoordinationTimeoutError(OAuth2Error):
    """Raised when waiting on another process's authorization timed out.

    Recoverable: the caller may retry acquisition from scratch.
    """

    def __init__(
        self,
        message: str,
        server_identity: str | None = None,
        owner_pid: int | None = None,
    ):
        super().__init__(message)
        self.server_identity = server_identity
        self.owner_pid = owner_pid
