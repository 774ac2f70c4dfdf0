from __future__ import annotations

import hashlib
import hmac
import secrets


_DIGEST_HEX_LENGTH = 64


def _as_bytes(data: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def hash_bytes(data: bytes | bytearray | memoryview | str) -> str:
    """Return the SHA-256 hex digest of ``data`` (strings are hashed as UTF-8)."""
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def verify_integrity(data: bytes | bytearray | memoryview | str, expected_digest: str) -> bool:
    """Check ``data`` against a hex digest without an early-exit comparison.

    The digest must match byte for byte, so an upper-case digest does not
    verify. Malformed digests verify as False.
    """
    if not isinstance(expected_digest, str) or len(expected_digest) != _DIGEST_HEX_LENGTH:
        return False
    try:
        expected = expected_digest.encode("ascii")
    except UnicodeEncodeError:
        return False
    actual = hash_bytes(data).encode("ascii")
    return hmac.compare_digest(actual, expected)


def generate_secure_token(nbytes: int = 32) -> str:
    # URL-safe random token for confirmation codes and credentials.
    return secrets.token_urlsafe(nbytes)
