"""Models for one browser authorization attempt.

An attempt pairs a PKCE verifier (persisted by the credential provider until
the code exchange) with the authorization URL built from it, and ends with
the redirect the callback receiver captured.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

PKCE_LENGTH_RANGE = (43, 128)


@dataclass(frozen=True)
class PKCEParameters:
    """Verifier and S256 challenge for a single attempt (RFC 7636)."""

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"

    def __post_init__(self) -> None:
        low, high = PKCE_LENGTH_RANGE
        for name in ("code_verifier", "code_challenge"):
            if not low <= len(getattr(self, name)) <= high:
                raise ValueError(f"{name} must be {low}-{high} characters")
        if self.code_challenge_method != "S256":
            raise ValueError(
                f"Unsupported code challenge method: {self.code_challenge_method}"
            )


@dataclass(frozen=True)
class AuthorizationRequest:
    """Query of the URL the user is sent to."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    pkce: PKCEParameters
    state: str
    resource: str | None = None  # RFC 8707, omitted for legacy servers
    scope: str | None = None

    def query_params(self) -> dict[str, str]:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.pkce.code_challenge,
            "code_challenge_method": self.pkce.code_challenge_method,
            "state": self.state,
        }
        if self.resource:
            params["resource"] = self.resource
        if self.scope:
            params["scope"] = self.scope
        return params

    def build_authorization_url(self) -> str:
        """Merge the request into the endpoint, keeping its own query (e.g. a tenant)."""
        endpoint = urlparse(self.authorization_endpoint)
        query = dict(parse_qsl(endpoint.query))
        query.update(self.query_params())
        return urlunparse(endpoint._replace(query=urlencode(query)))


@dataclass(frozen=True)
class AuthorizationResponse:
    """Redirect parameters as received; nothing is validated here."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> AuthorizationResponse:
        return cls(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
            error_uri=params.get("error_uri"),
        )

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None

    def describe_error(self) -> str:
        details = f" ({self.error_description})" if self.error_description else ""
        see = f" See: {self.error_uri}" if self.error_uri else ""
        return f"{self.error}{details}{see}"
