"""PKCE (Proof Key for Code Exchange) parameter generation.

Implements RFC 7636 with the S256 challenge method. The verifier is handed to
the credential provider for persistence, since the code exchange may happen
after the browser round trip.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from relay.auth.client.models.flow import PKCEParameters

_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"


def generate_pkce_parameters() -> PKCEParameters:
    """Generate a fresh verifier and its S256 challenge."""
    code_verifier = generate_code_verifier()
    return PKCEParameters(
        code_verifier=code_verifier,
        code_challenge=generate_code_challenge(code_verifier),
        code_challenge_method="S256",
    )


def generate_code_verifier() -> str:
    """Generate a cryptographically secure code verifier.

    RFC 7636 Section 4.1: 43-128 characters from the unreserved set
    ``[A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"``. Uses the maximum length.
    """
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(128))


def generate_code_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
