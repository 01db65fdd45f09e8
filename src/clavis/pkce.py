"""PKCE (Proof Key for Code Exchange) and anti-CSRF state utilities.

Implements RFC 7636 S256 code challenge derivation. Verifiers and state
tokens come from :mod:`secrets`; neither is ever derived from request data.

Design decisions:
- Manual S256 derivation rather than an OAuth client library keeps this
  module dependency-free and testable in isolation.
- The verifier travels to the callback inside the sealed pending-state
  cookie, so no server-side PKCE store is needed.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

# 48 random bytes encode to 64 base64url characters, inside RFC 7636's 43-128.
_VERIFIER_BYTES = 48
_STATE_BYTES = 32

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128


def generate_code_verifier() -> str:
    """Generate a fresh high-entropy PKCE code verifier.

    Returns:
        A 64-character base64url string.
    """
    return secrets.token_urlsafe(_VERIFIER_BYTES)


def derive_code_challenge(code_verifier: str) -> str:
    """Derive S256 code_challenge from code_verifier per RFC 7636.

    Computes ``BASE64URL(SHA256(code_verifier))`` with padding stripped.

    Args:
        code_verifier: The code verifier string (43-128 ASCII characters).

    Returns:
        Base64url-encoded SHA-256 hash without padding.

    Example:
        >>> derive_code_challenge("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk")
        'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM'
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Generate a random anti-CSRF ``state`` token."""
    return secrets.token_urlsafe(_STATE_BYTES)
