from __future__ import annotations

import binascii
from dataclasses import dataclass
import json
import logging
import os
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from maestro.core.errors import DecryptionError, KeyUnwrapError
from maestro.domain.enums import SecurityEvent
from maestro.services.crypto.keys import ALGORITHM, KeyManager
from maestro.services.crypto.utils import b64decode_str, b64encode_bytes, stable_json
from maestro.services.telemetry import increment_counter

if TYPE_CHECKING:
    from maestro.services.audit import AuditLogger


logger = logging.getLogger(__name__)

# Domain separation tags bound into the AAD; field envelopes never open as file envelopes.
FIELD_DOMAIN = "meeting-maestro"
FILE_DOMAIN = "meeting-maestro-file"
IV_BYTES = 16
TAG_BYTES = 16


@dataclass(frozen=True)
class Envelope:
    ciphertext: bytes
    iv: bytes
    tag: bytes
    key_id: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> dict[str, str]:
        return {
            "ciphertext": b64encode_bytes(self.ciphertext),
            "iv": b64encode_bytes(self.iv),
            "tag": b64encode_bytes(self.tag),
            "key_id": self.key_id,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Envelope:
        try:
            return cls(
                ciphertext=b64decode_str(payload["ciphertext"]),
                iv=b64decode_str(payload["iv"]),
                tag=b64decode_str(payload["tag"]),
                key_id=str(payload["key_id"]),
                algorithm=str(payload.get("algorithm") or ALGORITHM),
            )
        except (KeyError, TypeError, AttributeError, binascii.Error, ValueError) as exc:
            raise DecryptionError("malformed envelope") from exc


def _aad(domain: str, organization_id: str, key_id: str) -> bytes:
    return f"{domain}|{organization_id}|{key_id}".encode("utf-8")


class EnvelopeService:
    """Per-call data key envelope encryption bound to an organization and a data domain."""

    def __init__(self, key_manager: KeyManager, *, audit: AuditLogger | None = None) -> None:
        self._keys = key_manager
        self._audit = audit

    async def encrypt(self, plaintext: bytes | str, organization_id: str) -> Envelope:
        return await self._seal(plaintext, organization_id, FIELD_DOMAIN)

    async def decrypt(self, envelope: Envelope, organization_id: str) -> bytes:
        return await self._open(envelope, organization_id, FIELD_DOMAIN)

    async def encrypt_file(self, buffer: bytes, organization_id: str) -> Envelope:
        return await self._seal(buffer, organization_id, FILE_DOMAIN)

    async def decrypt_file(self, envelope: Envelope, organization_id: str) -> bytes:
        return await self._open(envelope, organization_id, FILE_DOMAIN)

    async def encrypt_json(self, value: Any, organization_id: str) -> Envelope:
        return await self._seal(stable_json(value), organization_id, FIELD_DOMAIN)

    async def decrypt_json(self, envelope: Envelope, organization_id: str) -> Any:
        return json.loads(await self._open(envelope, organization_id, FIELD_DOMAIN))

    async def _seal(self, plaintext: bytes | str, organization_id: str, domain: str) -> Envelope:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        key_id, data_key = await self._keys.create_data_key(organization_id)
        # Fresh random IV per call; each data key encrypts exactly one payload.
        iv = os.urandom(IV_BYTES)
        sealed = AESGCM(data_key).encrypt(iv, data, _aad(domain, organization_id, key_id))
        return Envelope(ciphertext=sealed[:-TAG_BYTES], iv=iv, tag=sealed[-TAG_BYTES:], key_id=key_id)

    async def _open(self, envelope: Envelope, organization_id: str, domain: str) -> bytes:
        if envelope.algorithm != ALGORITHM or len(envelope.iv) != IV_BYTES or len(envelope.tag) != TAG_BYTES:
            await self._report_failure(organization_id, envelope.key_id, "envelope shape invalid")
            raise DecryptionError()
        try:
            data_key = await self._keys.resolve_data_key(organization_id, envelope.key_id)
        except KeyUnwrapError as exc:
            await self._report_failure(organization_id, envelope.key_id, str(exc))
            raise DecryptionError() from exc
        try:
            return AESGCM(data_key).decrypt(
                envelope.iv,
                envelope.ciphertext + envelope.tag,
                _aad(domain, organization_id, envelope.key_id),
            )
        except InvalidTag as exc:
            await self._report_failure(organization_id, envelope.key_id, "authentication tag mismatch")
            raise DecryptionError() from exc

    async def _report_failure(self, organization_id: str, key_id: str, reason: str) -> None:
        # Full detail stays internal; callers only ever see a generic DecryptionError.
        increment_counter("crypto.decrypt_failures")
        logger.warning(
            "envelope_decrypt_failed organization_id=%s key_id=%s reason=%s",
            organization_id,
            key_id,
            reason,
        )
        if self._audit is not None:
            await self._audit.log_security_event(
                SecurityEvent.DECRYPTION_FAILURE,
                organization_id=organization_id,
                resource_id=key_id,
                detail=reason,
            )
