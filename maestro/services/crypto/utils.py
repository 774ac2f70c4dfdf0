from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def ensure_32_bytes(value: bytes) -> bytes:
    # Stretch or compress arbitrary-length secrets into an AES-256 key.
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def stable_json(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
