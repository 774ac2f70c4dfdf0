from __future__ import annotations

import pytest

from maestro.core.errors import KeyUnwrapError, MasterKeyMissingError
from maestro.domain.models import DataEncryptionKey
from maestro.services.container import build_services
from maestro.services.crypto.keys import KeyManager, MemoryKeyStore
from maestro.tests.utils.clock import MutableClock
from maestro.tests.utils.factories import audit_actions
from maestro.tests.utils.settings import make_settings


OLD_MASTER = "aa" * 32
NEW_MASTER = "bb" * 32


def test_wrapped_key_is_bound_to_organization_and_key_id() -> None:
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore())
    raw = manager.generate_data_key()
    wrapped = manager.wrap_key(raw, "org-a", "dek_1")

    assert manager.unwrap_key(wrapped, "org-a", "dek_1") == raw
    with pytest.raises(KeyUnwrapError):
        manager.unwrap_key(wrapped, "org-b", "dek_1")
    with pytest.raises(KeyUnwrapError):
        manager.unwrap_key(wrapped, "org-a", "dek_2")
    with pytest.raises(KeyUnwrapError):
        manager.unwrap_key("not base64 !!", "org-a", "dek_1")


def test_wrap_rejects_short_data_keys() -> None:
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore())
    with pytest.raises(ValueError):
        manager.wrap_key(b"short", "org-a", "dek_1")


@pytest.mark.parametrize("value", [None, "", "   ", "not-a-key!!"])
def test_missing_or_unreadable_master_key_is_fatal(value) -> None:
    with pytest.raises(MasterKeyMissingError):
        KeyManager.from_settings(MemoryKeyStore(), settings=make_settings(master_encryption_key=value))


def test_build_services_refuses_to_start_without_master_key(session_factory) -> None:
    with pytest.raises(MasterKeyMissingError):
        build_services(session_factory, settings=make_settings(master_encryption_key=None))


def test_repr_never_contains_key_material() -> None:
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore())
    rendered = repr(manager)
    assert OLD_MASTER not in rendered
    assert manager.master_key_id in rendered


@pytest.mark.asyncio
async def test_deactivated_key_stops_resolving() -> None:
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore())
    key_id, raw = await manager.create_data_key("org-a")
    assert await manager.resolve_data_key("org-a", key_id) == raw

    assert await manager.deactivate_key("org-a", key_id) is True
    with pytest.raises(KeyUnwrapError):
        await manager.resolve_data_key("org-a", key_id)
    assert await manager.deactivate_key("org-a", key_id) is False


@pytest.mark.asyncio
async def test_key_lookup_is_scoped_to_organization() -> None:
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore())
    key_id, _raw = await manager.create_data_key("org-a")
    with pytest.raises(KeyUnwrapError):
        await manager.resolve_data_key("org-b", key_id)


@pytest.mark.asyncio
async def test_expired_data_key_is_rejected() -> None:
    clock = MutableClock()
    manager = KeyManager(bytes.fromhex(OLD_MASTER), store=MemoryKeyStore(), data_key_ttl_days=1, clock=clock)
    key_id, raw = await manager.create_data_key("org-a")
    assert await manager.resolve_data_key("org-a", key_id) == raw

    clock.advance(days=2)
    with pytest.raises(KeyUnwrapError):
        await manager.resolve_data_key("org-a", key_id)


@pytest.mark.asyncio
async def test_retired_master_key_unwraps_until_rewrapped() -> None:
    store = MemoryKeyStore()
    old = KeyManager(bytes.fromhex(OLD_MASTER), store=store)
    key_id, raw = await old.create_data_key("org-a")

    rotated = KeyManager(bytes.fromhex(NEW_MASTER), store=store, retired_master_keys=[bytes.fromhex(OLD_MASTER)])
    assert await rotated.resolve_data_key("org-a", key_id) == raw
    assert await rotated.rewrap_organization_keys("org-a") == 1
    assert await rotated.rewrap_organization_keys("org-a") == 0

    stored = await store.get("org-a", key_id)
    assert stored is not None
    assert stored.master_key_id == rotated.master_key_id

    # Once re-wrapped, the old master key is no longer needed.
    fresh = KeyManager(bytes.fromhex(NEW_MASTER), store=store)
    assert await fresh.resolve_data_key("org-a", key_id) == raw


@pytest.mark.asyncio
async def test_master_rotation_rewraps_persisted_keys_and_is_audited(session_factory, clock) -> None:
    before = build_services(session_factory, settings=make_settings(master_encryption_key=OLD_MASTER), clock=clock)
    sealed = await before.envelope.encrypt("board minutes", "org-rotate")

    after = build_services(
        session_factory,
        settings=make_settings(
            master_encryption_key=NEW_MASTER,
            retired_master_encryption_keys=OLD_MASTER,
        ),
        clock=clock,
    )
    rewrapped = await after.keys.rotate_master_key("org-rotate", audit=after.audit, actor_id="owner-1")
    assert rewrapped == 1

    async with session_factory() as session:
        row = (await session.execute(DataEncryptionKey.__table__.select())).first()
    assert row is not None
    assert row.master_key_id == after.keys.master_key_id

    only_new = build_services(session_factory, settings=make_settings(master_encryption_key=NEW_MASTER), clock=clock)
    assert await only_new.envelope.decrypt(sealed, "org-rotate") == b"board minutes"
    assert "security.encryption_key_rotation" in await audit_actions(session_factory, "org-rotate")

