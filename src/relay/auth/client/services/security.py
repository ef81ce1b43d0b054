"""Security utilities for OAuth 2.1 flows.

State parameter generation and validation for CSRF protection, and redirect
URI checks.
"""

from __future__ import annotations

import secrets
import string
from urllib.parse import urlparse

from relay.auth.client.models.errors import StateValidationError

_LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


def generate_state() -> str:
    """Generate a 32-character cryptographically secure state parameter."""
    alphabet = string.ascii_letters + string.digits + "-._~"
    return "".join(secrets.choice(alphabet) for _ in range(32))


def validate_state(expected: str, actual: str | None) -> None:
    """Validate the state parameter returned on the redirect.

    Raises:
        StateValidationError: If the state is missing or does not match
    """
    if actual is None:
        raise StateValidationError(
            "Authorization server callback missing required state parameter"
        )
    if not secrets.compare_digest(expected, actual):
        raise StateValidationError("State parameter mismatch - possible CSRF attack")


def is_loopback_redirect(uri: str) -> bool:
    """Whether a redirect URI points at this machine over plain HTTP."""
    parsed = urlparse(uri)
    return parsed.scheme == "http" and parsed.hostname in _LOOPBACK_HOSTS
