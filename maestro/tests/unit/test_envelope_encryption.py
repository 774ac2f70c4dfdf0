from __future__ import annotations

from dataclasses import replace
import os

import pytest

from maestro.core.errors import DecryptionError
from maestro.services.audit import AuditFilters
from maestro.services.crypto.envelope import Envelope, EnvelopeService
from maestro.services.crypto.integrity import hash_bytes, verify_integrity
from maestro.services.crypto.keys import ALGORITHM, KeyManager, MemoryKeyStore
from maestro.services.telemetry import counters_snapshot


@pytest.fixture
def envelope_service() -> EnvelopeService:
    return EnvelopeService(KeyManager(bytes.fromhex("33" * 32), store=MemoryKeyStore()))


def _flip_first_byte(value: bytes) -> bytes:
    return bytes([value[0] ^ 0x01]) + value[1:]


@pytest.mark.asyncio
async def test_round_trip_for_text_and_bytes(envelope_service: EnvelopeService) -> None:
    sealed = await envelope_service.encrypt("Quarterly revenue discussion", "org-a")
    assert sealed.algorithm == ALGORITHM
    assert len(sealed.iv) == 16
    assert len(sealed.tag) == 16
    assert b"Quarterly" not in sealed.ciphertext
    assert await envelope_service.decrypt(sealed, "org-a") == b"Quarterly revenue discussion"

    raw = await envelope_service.encrypt(b"\x00\x01binary", "org-a")
    assert await envelope_service.decrypt(raw, "org-a") == b"\x00\x01binary"


@pytest.mark.asyncio
async def test_json_round_trip(envelope_service: EnvelopeService) -> None:
    payload = {"attendees": ["ana", "bo"], "duration_minutes": 45}
    sealed = await envelope_service.encrypt_json(payload, "org-a")
    assert await envelope_service.decrypt_json(sealed, "org-a") == payload


@pytest.mark.asyncio
async def test_envelope_from_other_organization_fails(envelope_service: EnvelopeService) -> None:
    sealed = await envelope_service.encrypt("org a notes", "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(sealed, "org-b")


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["ciphertext", "tag", "iv"])
async def test_tampered_envelope_fails(envelope_service: EnvelopeService, field: str) -> None:
    sealed = await envelope_service.encrypt("do not modify", "org-a")
    tampered = replace(sealed, **{field: _flip_first_byte(getattr(sealed, field))})
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(tampered, "org-a")


@pytest.mark.asyncio
async def test_swapped_key_id_fails(envelope_service: EnvelopeService) -> None:
    first = await envelope_service.encrypt("first", "org-a")
    second = await envelope_service.encrypt("second", "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(replace(first, key_id=second.key_id), "org-a")


@pytest.mark.asyncio
async def test_unknown_algorithm_or_short_tag_fails(envelope_service: EnvelopeService) -> None:
    sealed = await envelope_service.encrypt("shape", "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(replace(sealed, algorithm="AES-128-CBC"), "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(replace(sealed, tag=sealed.tag[:8]), "org-a")


@pytest.mark.asyncio
async def test_every_encryption_uses_fresh_iv_and_key(envelope_service: EnvelopeService) -> None:
    ivs: set[bytes] = set()
    key_ids: set[str] = set()
    for _ in range(10_000):
        sealed = await envelope_service.encrypt(b"same plaintext", "org-a")
        ivs.add(sealed.iv)
        key_ids.add(sealed.key_id)
    assert len(ivs) == 10_000
    assert len(key_ids) == 10_000


@pytest.mark.asyncio
async def test_field_and_file_envelopes_are_not_interchangeable(envelope_service: EnvelopeService) -> None:
    field_sealed = await envelope_service.encrypt(b"field value", "org-a")
    file_sealed = await envelope_service.encrypt_file(b"file body", "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt_file(field_sealed, "org-a")
    with pytest.raises(DecryptionError):
        await envelope_service.decrypt(file_sealed, "org-a")


@pytest.mark.asyncio
async def test_large_file_round_trip_preserves_digest(envelope_service: EnvelopeService) -> None:
    data = os.urandom(1_000_000)
    digest = hash_bytes(data)
    sealed = await envelope_service.encrypt_file(data, "org-a")
    assert len(sealed.ciphertext) == len(data)

    restored = await envelope_service.decrypt_file(sealed, "org-a")
    assert restored == data
    assert verify_integrity(restored, digest)


@pytest.mark.asyncio
async def test_envelope_serialization(envelope_service: EnvelopeService) -> None:
    sealed = await envelope_service.encrypt("serialized", "org-a")
    restored = Envelope.from_dict(sealed.to_dict())
    assert restored == sealed
    assert await envelope_service.decrypt(restored, "org-a") == b"serialized"

    with pytest.raises(DecryptionError):
        Envelope.from_dict({"ciphertext": "@@@", "iv": "", "tag": "", "key_id": "k"})
    with pytest.raises(DecryptionError):
        Envelope.from_dict({"iv": "AA=="})


@pytest.mark.asyncio
async def test_decrypt_failure_is_generic_and_recorded(services) -> None:
    sealed = await services.envelope.encrypt("confidential", "org-a")
    with pytest.raises(DecryptionError) as excinfo:
        await services.envelope.decrypt(sealed, "org-b")

    assert excinfo.value.client_message == "Unable to process encrypted payload"
    assert sealed.key_id not in excinfo.value.client_message
    assert counters_snapshot()["crypto.decrypt_failures"] == 1

    entries = await services.audit.query_audit_logs(
        "org-b", AuditFilters(action="security.decryption_failure")
    )
    assert len(entries) == 1
    assert entries[0].outcome == "denied"
    assert "confidential" not in str(entries[0].metadata_json)
