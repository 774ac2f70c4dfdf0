from __future__ import annotations

import binascii
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import hashlib
import hmac
import logging
import os
from typing import TYPE_CHECKING, Iterable, Protocol
from uuid import uuid4

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from maestro.core.clock import Clock, utc_now
from maestro.core.config import Settings, get_settings
from maestro.core.errors import KeyUnwrapError, MasterKeyMissingError
from maestro.domain.enums import SecurityEvent
from maestro.persistence.db import SessionFactory
from maestro.persistence.repos import keys as keys_repo
from maestro.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material, ensure_32_bytes
from maestro.services.telemetry import increment_counter

if TYPE_CHECKING:
    from maestro.services.audit import AuditLogger, RequestContext


logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
DATA_KEY_BYTES = 32
_WRAP_NONCE_BYTES = 12
_TAG_BYTES = 16


@dataclass(frozen=True)
class StoredKey:
    organization_id: str
    key_id: str
    wrapped_key: str
    master_key_id: str
    algorithm: str = ALGORITHM
    expires_at: datetime | None = None
    is_active: bool = True


class KeyStore(Protocol):
    async def put(self, key: StoredKey) -> None: ...

    async def get(self, organization_id: str, key_id: str) -> StoredKey | None: ...

    async def deactivate(self, organization_id: str, key_id: str, *, at: datetime) -> bool: ...

    async def list_not_wrapped_by(self, organization_id: str, master_key_id: str) -> list[StoredKey]: ...

    async def replace_wrapped(
        self,
        organization_id: str,
        key_id: str,
        *,
        wrapped_key: str,
        master_key_id: str,
    ) -> None: ...


class MemoryKeyStore:
    """Process-local key store for tooling and tests; nothing survives a restart."""

    def __init__(self) -> None:
        self._keys: dict[tuple[str, str], StoredKey] = {}

    async def put(self, key: StoredKey) -> None:
        self._keys[(key.organization_id, key.key_id)] = key

    async def get(self, organization_id: str, key_id: str) -> StoredKey | None:
        return self._keys.get((organization_id, key_id))

    async def deactivate(self, organization_id: str, key_id: str, *, at: datetime) -> bool:
        stored = self._keys.get((organization_id, key_id))
        if stored is None or not stored.is_active:
            return False
        self._keys[(organization_id, key_id)] = replace(stored, is_active=False)
        return True

    async def list_not_wrapped_by(self, organization_id: str, master_key_id: str) -> list[StoredKey]:
        return [
            key
            for (org_id, _), key in self._keys.items()
            if org_id == organization_id and key.master_key_id != master_key_id
        ]

    async def replace_wrapped(
        self,
        organization_id: str,
        key_id: str,
        *,
        wrapped_key: str,
        master_key_id: str,
    ) -> None:
        stored = self._keys[(organization_id, key_id)]
        self._keys[(organization_id, key_id)] = replace(stored, wrapped_key=wrapped_key, master_key_id=master_key_id)


class SqlKeyStore:
    """Durable key store over the encryption_keys table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def put(self, key: StoredKey) -> None:
        async with self._session_factory() as session:
            await keys_repo.insert_key(
                session,
                organization_id=key.organization_id,
                key_id=key.key_id,
                wrapped_key=key.wrapped_key,
                master_key_id=key.master_key_id,
                algorithm=key.algorithm,
                expires_at=key.expires_at,
            )
            await session.commit()

    async def get(self, organization_id: str, key_id: str) -> StoredKey | None:
        async with self._session_factory() as session:
            row = await keys_repo.get_key(session, organization_id=organization_id, key_id=key_id)
            if row is None:
                return None
            return StoredKey(
                organization_id=row.organization_id,
                key_id=row.key_id,
                wrapped_key=row.wrapped_key,
                master_key_id=row.master_key_id,
                algorithm=row.algorithm,
                expires_at=row.expires_at,
                is_active=row.is_active,
            )

    async def deactivate(self, organization_id: str, key_id: str, *, at: datetime) -> bool:
        async with self._session_factory() as session:
            updated = await keys_repo.deactivate_key(
                session,
                organization_id=organization_id,
                key_id=key_id,
                deactivated_at=at,
            )
            await session.commit()
            return updated > 0

    async def list_not_wrapped_by(self, organization_id: str, master_key_id: str) -> list[StoredKey]:
        async with self._session_factory() as session:
            rows = await keys_repo.list_keys_not_wrapped_by(
                session,
                organization_id=organization_id,
                master_key_id=master_key_id,
            )
            return [
                StoredKey(
                    organization_id=row.organization_id,
                    key_id=row.key_id,
                    wrapped_key=row.wrapped_key,
                    master_key_id=row.master_key_id,
                    algorithm=row.algorithm,
                    expires_at=row.expires_at,
                    is_active=row.is_active,
                )
                for row in rows
            ]

    async def replace_wrapped(
        self,
        organization_id: str,
        key_id: str,
        *,
        wrapped_key: str,
        master_key_id: str,
    ) -> None:
        async with self._session_factory() as session:
            row = await keys_repo.get_key(session, organization_id=organization_id, key_id=key_id)
            if row is None:
                raise KeyUnwrapError(f"key {key_id} disappeared during rewrap")
            row.wrapped_key = wrapped_key
            row.master_key_id = master_key_id
            await session.commit()


def master_key_fingerprint(master_key: bytes) -> str:
    # Identify a master key without revealing it; stored beside each wrapped key.
    return hashlib.sha256(master_key).hexdigest()[:16]


def _derive_kek(master_key: bytes, organization_id: str) -> bytes:
    # HMAC-based derivation keeps per-organization KEKs deterministic without persisting them.
    message = f"maestro-kek:{organization_id}".encode("utf-8")
    return hmac.new(master_key, message, hashlib.sha256).digest()


def _wrap_aad(organization_id: str, key_id: str) -> bytes:
    return f"{organization_id}:{key_id}".encode("utf-8")


class KeyManager:
    def __init__(
        self,
        master_key: bytes,
        *,
        store: KeyStore,
        retired_master_keys: Iterable[bytes] = (),
        data_key_ttl_days: int | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if not master_key:
            raise MasterKeyMissingError("MASTER_ENCRYPTION_KEY is not configured")
        self._master_key = ensure_32_bytes(master_key)
        self._master_key_id = master_key_fingerprint(self._master_key)
        # Retired master keys stay usable for unwrap only, until their keys are re-wrapped.
        self._master_keys: dict[str, bytes] = {self._master_key_id: self._master_key}
        for retired in retired_master_keys:
            normalized = ensure_32_bytes(retired)
            self._master_keys.setdefault(master_key_fingerprint(normalized), normalized)
        self._store = store
        self._data_key_ttl_days = data_key_ttl_days
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: KeyStore,
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> KeyManager:
        # A missing master key is fatal: a generated fallback would orphan every wrapped key on restart.
        resolved = settings or get_settings()
        raw = (resolved.master_encryption_key or "").strip()
        if not raw:
            raise MasterKeyMissingError("MASTER_ENCRYPTION_KEY is not configured")
        try:
            master_key = decode_key_material(raw)
            retired = [decode_key_material(item) for item in resolved.retired_master_keys()]
        except ValueError as exc:
            raise MasterKeyMissingError("MASTER_ENCRYPTION_KEY must be base64 or hex key material") from exc
        return cls(
            master_key,
            store=store,
            retired_master_keys=retired,
            data_key_ttl_days=resolved.crypto_data_key_ttl_days,
            clock=clock,
        )

    @property
    def master_key_id(self) -> str:
        return self._master_key_id

    def __repr__(self) -> str:
        return f"KeyManager(master_key_id={self._master_key_id!r})"

    def generate_data_key(self) -> bytes:
        return os.urandom(DATA_KEY_BYTES)

    def wrap_key(self, raw_key: bytes, organization_id: str, key_id: str) -> str:
        if len(raw_key) != DATA_KEY_BYTES:
            raise ValueError("data keys must be 32 bytes")
        kek = _derive_kek(self._master_key, organization_id)
        nonce = os.urandom(_WRAP_NONCE_BYTES)
        ciphertext = AESGCM(kek).encrypt(nonce, raw_key, _wrap_aad(organization_id, key_id))
        return b64encode_bytes(nonce + ciphertext)

    def unwrap_key(
        self,
        wrapped: str,
        organization_id: str,
        key_id: str,
        *,
        master_key_id: str | None = None,
    ) -> bytes:
        master_key = self._master_keys.get(master_key_id or self._master_key_id)
        if master_key is None:
            raise KeyUnwrapError(f"unknown master key {master_key_id}")
        try:
            payload = b64decode_str(wrapped)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise KeyUnwrapError("wrapped key is not valid base64") from exc
        if len(payload) != _WRAP_NONCE_BYTES + DATA_KEY_BYTES + _TAG_BYTES:
            raise KeyUnwrapError("wrapped key has unexpected length")
        nonce, ciphertext = payload[:_WRAP_NONCE_BYTES], payload[_WRAP_NONCE_BYTES:]
        kek = _derive_kek(master_key, organization_id)
        try:
            return AESGCM(kek).decrypt(nonce, ciphertext, _wrap_aad(organization_id, key_id))
        except InvalidTag as exc:
            raise KeyUnwrapError("wrapped key failed authentication") from exc

    async def store_wrapped_key(self, organization_id: str, key_id: str, wrapped: str) -> None:
        expires_at = None
        if self._data_key_ttl_days:
            expires_at = self._clock() + timedelta(days=self._data_key_ttl_days)
        await self._store.put(
            StoredKey(
                organization_id=organization_id,
                key_id=key_id,
                wrapped_key=wrapped,
                master_key_id=self._master_key_id,
                expires_at=expires_at,
            )
        )

    async def retrieve_wrapped_key(self, organization_id: str, key_id: str) -> StoredKey | None:
        return await self._store.get(organization_id, key_id)

    async def create_data_key(self, organization_id: str) -> tuple[str, bytes]:
        # Mint, wrap and persist a fresh key; the raw key never leaves this call's caller.
        key_id = f"dek_{uuid4().hex}"
        raw_key = self.generate_data_key()
        await self.store_wrapped_key(organization_id, key_id, self.wrap_key(raw_key, organization_id, key_id))
        return key_id, raw_key

    async def resolve_data_key(self, organization_id: str, key_id: str) -> bytes:
        stored = await self._store.get(organization_id, key_id)
        if stored is None:
            raise KeyUnwrapError(f"key {key_id} not found for organization")
        if not stored.is_active:
            raise KeyUnwrapError(f"key {key_id} has been rotated out")
        if stored.expires_at is not None and stored.expires_at <= self._clock():
            raise KeyUnwrapError(f"key {key_id} expired")
        return self.unwrap_key(stored.wrapped_key, organization_id, key_id, master_key_id=stored.master_key_id)

    async def deactivate_key(self, organization_id: str, key_id: str) -> bool:
        # Envelopes referencing a deactivated key stop decrypting.
        changed = await self._store.deactivate(organization_id, key_id, at=self._clock())
        if changed:
            logger.info("data_key_deactivated organization_id=%s key_id=%s", organization_id, key_id)
        return changed

    async def rewrap_organization_keys(self, organization_id: str) -> int:
        stale = await self._store.list_not_wrapped_by(organization_id, self._master_key_id)
        rewrapped = 0
        for stored in stale:
            raw_key = self.unwrap_key(
                stored.wrapped_key,
                organization_id,
                stored.key_id,
                master_key_id=stored.master_key_id,
            )
            await self._store.replace_wrapped(
                organization_id,
                stored.key_id,
                wrapped_key=self.wrap_key(raw_key, organization_id, stored.key_id),
                master_key_id=self._master_key_id,
            )
            rewrapped += 1
        increment_counter("crypto.keys_rewrapped", rewrapped)
        return rewrapped

    async def rotate_master_key(
        self,
        organization_id: str,
        *,
        audit: AuditLogger,
        actor_id: str | None = None,
        context: RequestContext | None = None,
    ) -> int:
        # Log-then-act: the rotation proceeds only once its audit entry is confirmed.
        await audit.log_security_event(
            SecurityEvent.ENCRYPTION_KEY_ROTATION,
            organization_id=organization_id,
            user_id=actor_id,
            detail=f"rewrap under master key {self._master_key_id}",
            context=context,
            critical=True,
        )
        count = await self.rewrap_organization_keys(organization_id)
        logger.info(
            "master_key_rotation_completed organization_id=%s master_key_id=%s rewrapped=%s",
            organization_id,
            self._master_key_id,
            count,
        )
        return count
