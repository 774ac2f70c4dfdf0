from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select

from maestro.core.clock import utc_now
from maestro.domain.models import (
    ActionItem,
    AnalyticsRecord,
    ApiKey,
    AuditLogEntry,
    Meeting,
    Organization,
    StoredFile,
    User,
    UserPreference,
    UserSession,
)
from maestro.persistence.db import SessionFactory
from maestro.services.auth.api_keys import generate_api_key, normalize_role
from maestro.services.crypto.envelope import EnvelopeService
from maestro.services.crypto.integrity import hash_bytes


async def create_organization(
    session_factory: SessionFactory,
    *,
    compliance_mode: str = "standard",
    is_active: bool = True,
    security_policy: dict | None = None,
) -> Organization:
    organization = Organization(
        id=f"org-{uuid4().hex[:12]}",
        name="Acme Meetings",
        compliance_mode=compliance_mode,
        is_active=is_active,
        security_policy_json=security_policy or {"data_retention_days": 90, "encryption_required": True},
    )
    async with session_factory() as session:
        session.add(organization)
        await session.commit()
    return organization


async def create_member(
    session_factory: SessionFactory,
    organization_id: str,
    *,
    role: str = "user",
    is_active: bool = True,
    email: str | None = None,
) -> User:
    user_id = uuid4().hex
    user = User(
        id=user_id,
        organization_id=organization_id,
        email=email or f"{user_id[:8]}@example.test",
        name=f"Member {user_id[:6]}",
        role=normalize_role(role).value,
        is_active=is_active,
    )
    async with session_factory() as session:
        session.add(user)
        await session.commit()
    return user


async def create_api_key(
    session_factory: SessionFactory,
    user: User,
    *,
    revoked: bool = False,
) -> tuple[str, dict[str, str]]:
    # Returns the raw key and ready-to-send headers.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with session_factory() as session:
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                organization_id=user.organization_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name="test-key",
                revoked_at=utc_now() if revoked else None,
            )
        )
        await session.commit()
    return raw_key, {"Authorization": f"Bearer {raw_key}"}


async def create_meeting(
    session_factory: SessionFactory,
    organization_id: str,
    user_id: str,
    *,
    title: str = "Weekly sync",
) -> Meeting:
    meeting = Meeting(id=uuid4().hex, organization_id=organization_id, user_id=user_id, title=title)
    async with session_factory() as session:
        session.add(meeting)
        await session.commit()
    return meeting


async def create_action_item(
    session_factory: SessionFactory,
    organization_id: str,
    *,
    meeting_id: str | None = None,
    owner_user_id: str | None = None,
    description: str = "Send the follow-up notes",
) -> ActionItem:
    item = ActionItem(
        id=uuid4().hex,
        organization_id=organization_id,
        meeting_id=meeting_id,
        owner_user_id=owner_user_id,
        description=description,
    )
    async with session_factory() as session:
        session.add(item)
        await session.commit()
    return item


async def create_analytics_record(
    session_factory: SessionFactory,
    organization_id: str,
    user_id: str,
    *,
    metric_name: str = "talk_time_ratio",
    metric_value: float = 0.42,
) -> AnalyticsRecord:
    record = AnalyticsRecord(
        id=uuid4().hex,
        organization_id=organization_id,
        user_id=user_id,
        metric_name=metric_name,
        metric_value=metric_value,
    )
    async with session_factory() as session:
        session.add(record)
        await session.commit()
    return record


async def create_stored_file(
    session_factory: SessionFactory,
    envelope: EnvelopeService,
    organization_id: str,
    user_id: str,
    *,
    data: bytes = b"WEBVTT\n\n00:00.000 --> 00:02.000\nHello team",
    meeting_id: str | None = None,
) -> StoredFile:
    sealed = await envelope.encrypt_file(data, organization_id)
    stored = StoredFile(
        id=uuid4().hex,
        organization_id=organization_id,
        user_id=user_id,
        meeting_id=meeting_id,
        file_name="transcript.vtt",
        file_type="text/vtt",
        size_bytes=len(data),
        sha256=hash_bytes(data),
        key_id=sealed.key_id,
        iv=sealed.iv,
        tag=sealed.tag,
        ciphertext=sealed.ciphertext,
    )
    async with session_factory() as session:
        session.add(stored)
        await session.commit()
    return stored


async def create_personal_records(session_factory: SessionFactory, user: User) -> None:
    # Preferences and a session row so exports and erasure have personal data to cover.
    async with session_factory() as session:
        session.add(
            UserPreference(
                user_id=user.id,
                organization_id=user.organization_id,
                preferences_json={"theme": "dark", "timezone": "Europe/Berlin"},
                retention_json={},
            )
        )
        session.add(
            UserSession(
                id=uuid4().hex,
                organization_id=user.organization_id,
                user_id=user.id,
                ip_address="203.0.113.7",
                user_agent="pytest",
            )
        )
        await session.commit()


async def audit_actions(session_factory: SessionFactory, organization_id: str) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(
            select(AuditLogEntry.action)
            .where(AuditLogEntry.organization_id == organization_id)
            .order_by(AuditLogEntry.id)
        )
        return list(result.scalars().all())
