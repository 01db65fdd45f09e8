"""Password-derived authenticated encryption for cookie payloads.

A sealed value is the JSON encoding of an arbitrary payload, encrypted with
AES-256-GCM under a key derived (HKDF-SHA256) from the cookie password and a
per-token random salt. The token layout is::

    v1.<expires_ms>.<salt>.<nonce>.<ciphertext>

All binary segments are unpadded base64url. The version, expiry and salt are
bound into the GCM associated data, so editing any segment fails
authentication. ``expires_ms == 0`` means the codec enforces no expiry and
the lifetime is governed by the carrying cookie's max-age.

The same primitive seals both the long-lived session cookie and the
short-lived pending-state cookie.

Example:
    >>> token = seal({"returnTo": "/dashboard"}, password, ttl=600)
    >>> unseal(token, password)
    {'returnTo': '/dashboard'}
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
import time
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from clavis.exceptions import SealingError

__all__ = ["MIN_PASSWORD_LENGTH", "Sealer", "seal", "unseal"]

MIN_PASSWORD_LENGTH = 32

_VERSION = "v1"
_KDF_INFO = b"clavis/seal/v1"
_SALT_BYTES = 16
_NONCE_BYTES = 12
_KEY_BYTES = 32
_EXPIRY_PATTERN = re.compile(r"0|[1-9][0-9]*")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    """Strict base64url decode; rejects anything that does not round-trip."""
    try:
        data = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError) as exc:
        raise SealingError("Sealed value is not valid base64url") from exc
    if _b64encode(data) != segment:
        raise SealingError("Sealed value is not canonically encoded")
    return data


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise SealingError(
            f"Sealing password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )


def _derive_key(password: str, salt: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES,
        salt=salt,
        info=_KDF_INFO,
    )
    return hkdf.derive(password.encode("utf-8"))


def _now_ms() -> int:
    return int(time.time() * 1000)


def seal(payload: Any, password: str, ttl: int = 0) -> str:
    """Seal a JSON-serialisable payload.

    Args:
        payload: Any JSON-serialisable value.
        password: Sealing password (>= 32 characters).
        ttl: Lifetime in seconds enforced by :func:`unseal`; 0 disables it.

    Returns:
        Opaque, URL- and cookie-safe token string.

    Raises:
        SealingError: If the password is too short or the payload is not
            JSON-serialisable.
        ValueError: If ``ttl`` is negative.
    """
    _check_password(password)
    if ttl < 0:
        raise ValueError("ttl must be >= 0")

    try:
        plaintext = json.dumps(payload, separators=(",", ":"), allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise SealingError("Payload is not JSON-serialisable") from exc

    expires_ms = _now_ms() + ttl * 1000 if ttl else 0
    salt = os.urandom(_SALT_BYTES)
    nonce = os.urandom(_NONCE_BYTES)
    header = f"{_VERSION}.{expires_ms}.{_b64encode(salt)}"

    ciphertext = AESGCM(_derive_key(password, salt)).encrypt(
        nonce, plaintext, header.encode("ascii")
    )
    return f"{header}.{_b64encode(nonce)}.{_b64encode(ciphertext)}"


def unseal(token: str, password: str) -> Any:
    """Verify and decrypt a sealed token.

    Args:
        token: Value produced by :func:`seal`.
        password: The password it was sealed with.

    Returns:
        The original payload.

    Raises:
        SealingError: If the token is malformed, fails authentication,
            carries an elapsed TTL, or the password is too short.
    """
    _check_password(password)

    parts = token.split(".")
    if len(parts) != 5:
        raise SealingError("Malformed sealed value")
    version, expires_raw, salt_b64, nonce_b64, ciphertext_b64 = parts

    if version != _VERSION:
        raise SealingError(f"Unsupported sealed value version: {version!r}")
    if not _EXPIRY_PATTERN.fullmatch(expires_raw):
        raise SealingError("Malformed sealed value expiry")

    salt = _b64decode(salt_b64)
    nonce = _b64decode(nonce_b64)
    ciphertext = _b64decode(ciphertext_b64)
    if len(salt) != _SALT_BYTES or len(nonce) != _NONCE_BYTES:
        raise SealingError("Malformed sealed value")

    header = f"{version}.{expires_raw}.{salt_b64}"
    try:
        plaintext = AESGCM(_derive_key(password, salt)).decrypt(
            nonce, ciphertext, header.encode("ascii")
        )
    except InvalidTag as exc:
        raise SealingError("Sealed value failed integrity check") from exc

    expires_ms = int(expires_raw)
    if expires_ms and _now_ms() >= expires_ms:
        raise SealingError("Sealed value has expired")

    try:
        return json.loads(plaintext)
    except ValueError as exc:
        raise SealingError("Sealed value payload is not valid JSON") from exc


class Sealer:
    """Binds :func:`seal` / :func:`unseal` to one password.

    Args:
        password: Sealing password (>= 32 characters).

    Raises:
        SealingError: If the password is too short.
    """

    def __init__(self, password: str) -> None:
        _check_password(password)
        self._password = password

    def seal(self, payload: Any, ttl: int = 0) -> str:
        return seal(payload, self._password, ttl)

    def unseal(self, token: str) -> Any:
        return unseal(token, self._password)

    def __repr__(self) -> str:
        return "Sealer(password=***)"
