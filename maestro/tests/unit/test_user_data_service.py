from __future__ import annotations

import csv
from datetime import timedelta
import io
import json
from uuid import uuid4

import pytest
from sqlalchemy import select

from maestro.core.errors import (
    InvalidConfirmationCode,
    InvalidRequestState,
    PermissionDenied,
    RateLimitExceeded,
    ResourceNotFoundError,
    ValidationError,
)
from maestro.domain.models import (
    ActionItem,
    AnalyticsRecord,
    ApiKey,
    DataExport,
    DeletionRequest,
    Meeting,
    RetentionSchedule,
    StoredFile,
    User,
    UserPreference,
    UserSession,
)
from maestro.services.container import build_services
from maestro.services.crypto.integrity import hash_bytes
from maestro.services.user_data import RetentionPreferences, serialize_export
from maestro.tests.utils.factories import (
    audit_actions,
    create_action_item,
    create_analytics_record,
    create_api_key,
    create_meeting,
    create_member,
    create_organization,
    create_personal_records,
    create_stored_file,
)
from maestro.tests.utils.settings import make_settings


async def _populated_member(services, session_factory, org_id: str):
    member = await create_member(session_factory, org_id, role="user")
    await create_personal_records(session_factory, member)
    meeting = await create_meeting(session_factory, org_id, member.id, title="Roadmap review")
    await create_action_item(session_factory, org_id, meeting_id=meeting.id, description="Draft the Q3 plan")
    await create_action_item(session_factory, org_id, owner_user_id=member.id, description="Book the venue")
    await create_analytics_record(session_factory, org_id, member.id)
    await create_stored_file(session_factory, services.envelope, org_id, member.id, meeting_id=meeting.id)
    await create_api_key(session_factory, member)
    return member, meeting


@pytest.mark.asyncio
async def test_export_contains_every_section(services, session_factory) -> None:
    org = await create_organization(session_factory)
    member, meeting = await _populated_member(services, session_factory, org.id)
    await services.audit.log("meeting.view", "meeting", organization_id=org.id, user_id=member.id, resource_id=meeting.id)

    export = await services.user_data.export_user_data(member.id, org.id)

    personal = export.personal_data
    assert personal["profile"]["email"] == member.email
    assert personal["preferences"]["preferences_json"]["theme"] == "dark"
    assert len(personal["sessions"]) == 1

    organization_data = export.organization_data
    assert [row["title"] for row in organization_data["meetings"]] == ["Roadmap review"]
    assert sorted(row["description"] for row in organization_data["actions"]) == [
        "Book the venue",
        "Draft the Q3 plan",
    ]
    assert len(organization_data["analytics"]) == 1
    stored_file = organization_data["files"][0]
    assert stored_file["sha256"] == hash_bytes(b"WEBVTT\n\n00:00.000 --> 00:02.000\nHello team")
    assert "ciphertext" not in stored_file

    assert [entry["action"] for entry in export.audit_trail] == ["meeting.view"]
    assert "gdpr.export" in await audit_actions(session_factory, org.id)

    # Gathered steps are only ever persisted encrypted.
    async with session_factory() as session:
        row = await session.get(DataExport, export.export_id)
    assert row.status == "completed"
    assert member.email not in json.dumps(row.steps_json)

    history = await services.user_data.get_data_export_history(member.id, org.id)
    assert [item.id for item in history] == [export.export_id]


@pytest.mark.asyncio
async def test_export_is_rate_limited_per_user(services, session_factory, clock) -> None:
    org = await create_organization(session_factory)
    member = await create_member(session_factory, org.id)
    await services.user_data.export_user_data(member.id, org.id)

    with pytest.raises(RateLimitExceeded) as excinfo:
        await services.user_data.export_user_data(member.id, org.id)
    assert excinfo.value.retry_after_s == 24 * 3600

    clock.advance(hours=23)
    with pytest.raises(RateLimitExceeded) as excinfo:
        await services.user_data.export_user_data(member.id, org.id)
    assert excinfo.value.retry_after_s == 3600

    clock.advance(hours=1)
    await services.user_data.export_user_data(member.id, org.id)


@pytest.mark.asyncio
async def test_organization_export_cap(session_factory, clock) -> None:
    capped = build_services(
        session_factory,
        settings=make_settings(gdpr_org_export_limit_per_day=1),
        clock=clock,
    )
    org = await create_organization(session_factory)
    first = await create_member(session_factory, org.id)
    second = await create_member(session_factory, org.id)

    await capped.user_data.export_user_data(first.id, org.id)
    with pytest.raises(RateLimitExceeded):
        await capped.user_data.export_user_data(second.id, org.id)

    clock.advance(days=1, minutes=1)
    await capped.user_data.export_user_data(second.id, org.id)


@pytest.mark.asyncio
async def test_export_requires_membership_and_valid_format(services, session_factory) -> None:
    org = await create_organization(session_factory)
    other_org = await create_organization(session_factory)
    member = await create_member(session_factory, org.id)
    outsider = await create_member(session_factory, other_org.id, role="owner")

    with pytest.raises(PermissionDenied):
        await services.user_data.export_user_data(member.id, org.id, requested_by=outsider.id)
    with pytest.raises(ValidationError):
        await services.user_data.export_user_data(member.id, org.id, "xml")
    with pytest.raises(ResourceNotFoundError):
        await services.user_data.export_user_data("ghost", org.id, requested_by=member.id)


@pytest.mark.asyncio
async def test_plain_user_cannot_export_a_colleague(services, session_factory) -> None:
    org = await create_organization(session_factory)
    admin = await create_member(session_factory, org.id, role="admin")
    colleague = await create_member(session_factory, org.id)
    subject = await create_member(session_factory, org.id)
    await create_personal_records(session_factory, subject)

    with pytest.raises(PermissionDenied):
        await services.user_data.export_user_data(subject.id, org.id, requested_by=colleague.id)
    assert "security.unauthorized_access" in await audit_actions(session_factory, org.id)

    # A write grant scoped to the subject opens their data to that one colleague.
    await services.access.grant_permission(
        org.id, colleague.id, "user", "write", granted_by=admin.id, resource_id=subject.id
    )
    export = await services.user_data.export_user_data(subject.id, org.id, requested_by=colleague.id)
    assert export.personal_data["profile"]["email"] == subject.email

    bystander = await create_member(session_factory, org.id)
    with pytest.raises(PermissionDenied):
        await services.user_data.authorize_subject_access(colleague.id, org.id, bystander.id)
    await services.user_data.authorize_subject_access(admin.id, org.id, bystander.id)


@pytest.mark.asyncio
async def test_interrupted_export_resumes_from_stored_steps(services, session_factory, clock) -> None:
    org = await create_organization(session_factory)
    member = await create_member(session_factory, org.id)
    marker = {"profile": {"note": "gathered before the crash"}, "preferences": None, "sessions": []}
    sealed = await services.envelope.encrypt_json(marker, org.id)

    export_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            DataExport(
                id=export_id,
                organization_id=org.id,
                user_id=member.id,
                requested_by=member.id,
                format="json",
                status="running",
                steps_json={"personal_data": sealed.to_dict()},
                requested_at=clock(),
            )
        )
        await session.commit()

    export = await services.user_data.export_user_data(member.id, org.id)
    assert export.export_id == export_id
    assert export.personal_data == marker
    assert export.organization_data["meetings"] == []


@pytest.mark.asyncio
async def test_serialize_export_formats(services, session_factory) -> None:
    org = await create_organization(session_factory)
    member, _ = await _populated_member(services, session_factory, org.id)
    export = await services.user_data.export_user_data(member.id, org.id, "csv")

    document = json.loads(serialize_export(export, "json"))
    assert document["user_id"] == member.id
    assert document["organization_data"]["meetings"][0]["title"] == "Roadmap review"

    rows = list(csv.reader(io.StringIO(serialize_export(export, "csv").decode("utf-8"))))
    assert rows[0] == ["section", "record_type", "record_id", "field", "value"]
    assert ["organization_data", "meetings"] in [row[:2] for row in rows]
    assert any(row[3] == "title" and row[4] == "Roadmap review" for row in rows)

    with pytest.raises(ValidationError):
        serialize_export(export, "pdf")


@pytest.mark.asyncio
async def test_deletion_request_needs_reason_and_owner(services, session_factory) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    admin = await create_member(session_factory, org.id, role="admin")
    member = await create_member(session_factory, org.id)

    with pytest.raises(ValidationError):
        await services.user_data.delete_user_data(member.id, org.id, "  ", owner.id)
    with pytest.raises(PermissionDenied):
        await services.user_data.delete_user_data(member.id, org.id, "left the company", admin.id)

    created = await services.user_data.delete_user_data(member.id, org.id, "left the company", owner.id)
    assert created.request.status == "pending"
    assert created.request.confirmation_code_hash == hash_bytes(created.confirmation_code)
    assert created.confirmation_code not in created.request.confirmation_code_hash
    assert "gdpr.deletion_requested" in await audit_actions(session_factory, org.id)


@pytest.mark.asyncio
async def test_wrong_confirmation_code_changes_nothing(services, session_factory) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    member, _ = await _populated_member(services, session_factory, org.id)
    created = await services.user_data.delete_user_data(member.id, org.id, "requested by member", owner.id)

    with pytest.raises(InvalidConfirmationCode):
        await services.user_data.execute_data_deletion(created.request.id, org.id, "not-the-code")

    async with session_factory() as session:
        assert await session.get(User, member.id) is not None
        request = await session.get(DeletionRequest, created.request.id)
    assert request.status == "pending"
    assert request.completed_steps_json == []

    actions = await audit_actions(session_factory, org.id)
    assert "security.invalid_confirmation_code" in actions
    assert "gdpr.deletion_step" not in actions


@pytest.mark.asyncio
async def test_confirmed_erasure_removes_user_data(services, session_factory, clock) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    member, meeting = await _populated_member(services, session_factory, org.id)
    await services.retention.schedule_data_deletion(org.id, "meeting", meeting.id, 30)
    created = await services.user_data.delete_user_data(member.id, org.id, "requested by member", owner.id)

    completed = await services.user_data.execute_data_deletion(
        created.request.id, org.id, created.confirmation_code, executed_by=owner.id
    )
    assert completed.status == "completed"
    assert completed.completed_at == clock()

    async with session_factory() as session:
        assert await session.get(User, member.id) is None
        assert await session.get(UserPreference, member.id) is None
        for model, column in (
            (UserSession, UserSession.user_id),
            (ApiKey, ApiKey.user_id),
            (Meeting, Meeting.user_id),
            (AnalyticsRecord, AnalyticsRecord.user_id),
            (StoredFile, StoredFile.user_id),
            (ActionItem, ActionItem.owner_user_id),
        ):
            remaining = (await session.execute(select(model).where(column == member.id))).scalars().all()
            assert remaining == [], model.__tablename__
        schedules = {
            row.resource_type: row
            for row in (
                await session.execute(select(RetentionSchedule).where(RetentionSchedule.organization_id == org.id))
            ).scalars()
        }
        request = await session.get(DeletionRequest, created.request.id)

    assert schedules["meeting"].state == "deleted"
    # The audit trail is kept for the compliance window and then swept.
    assert schedules["audit_log"].resource_id == member.id
    assert schedules["audit_log"].delete_after == clock() + timedelta(days=2555)
    assert request.completed_steps_json == ["personal_data", "organization_data", "audit_trail"]

    actions = await audit_actions(session_factory, org.id)
    assert actions.count("gdpr.deletion_step") == 3
    assert actions[-1] == "gdpr.deletion_completed"

    with pytest.raises(InvalidRequestState):
        await services.user_data.execute_data_deletion(created.request.id, org.id, created.confirmation_code)


@pytest.mark.asyncio
async def test_erasure_resumes_after_committed_steps(services, session_factory) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    member, meeting = await _populated_member(services, session_factory, org.id)
    created = await services.user_data.delete_user_data(member.id, org.id, "requested by member", owner.id)

    async with session_factory() as session:
        request = await session.get(DeletionRequest, created.request.id)
        request.completed_steps_json = ["personal_data"]
        await session.commit()

    await services.user_data.execute_data_deletion(created.request.id, org.id, created.confirmation_code)

    async with session_factory() as session:
        # The step recorded as done is not repeated.
        assert await session.get(User, member.id) is not None
        assert await session.get(Meeting, meeting.id) is None
    assert (await audit_actions(session_factory, org.id)).count("gdpr.deletion_step") == 2


@pytest.mark.asyncio
async def test_rejected_request_cannot_execute(services, session_factory) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    member = await create_member(session_factory, org.id)
    created = await services.user_data.delete_user_data(member.id, org.id, "duplicate ticket", owner.id)

    rejected = await services.user_data.reject_deletion_request(created.request.id, org.id, rejected_by=owner.id)
    assert rejected.status == "rejected"

    with pytest.raises(InvalidRequestState):
        await services.user_data.execute_data_deletion(created.request.id, org.id, created.confirmation_code)
    with pytest.raises(InvalidRequestState):
        await services.user_data.reject_deletion_request(created.request.id, org.id, rejected_by=owner.id)
    with pytest.raises(ResourceNotFoundError):
        await services.user_data.get_deletion_request(created.request.id, "another-org")


@pytest.mark.asyncio
async def test_retention_status_and_preferences(services, session_factory) -> None:
    org = await create_organization(session_factory)
    owner = await create_member(session_factory, org.id, role="owner")
    admin = await create_member(session_factory, org.id, role="admin")
    member, meeting = await _populated_member(services, session_factory, org.id)
    await services.retention.schedule_data_deletion(org.id, "meeting", meeting.id, 30)
    created = await services.user_data.delete_user_data(member.id, org.id, "pending review", owner.id)

    status = await services.user_data.get_data_retention_status(member.id, org.id)
    assert status.data_counts == {"meetings": 1, "actions": 2, "analytics": 1, "files": 1}
    assert [item["resource_id"] for item in status.scheduled_deletions] == [meeting.id]
    assert status.pending_deletion_requests == [created.request.id]

    with pytest.raises(PermissionDenied):
        await services.user_data.update_data_retention_preferences(
            member.id, org.id, RetentionPreferences(meeting_days=30)
        )
    with pytest.raises(ValidationError):
        await services.user_data.update_data_retention_preferences(
            member.id, org.id, RetentionPreferences(meeting_days=400), updated_by=admin.id
        )

    merged = await services.user_data.update_data_retention_preferences(
        member.id, org.id, RetentionPreferences(meeting_days=30, auto_delete=False), updated_by=admin.id
    )
    assert merged == {"meeting_days": 30, "auto_delete": False}
    merged = await services.user_data.update_data_retention_preferences(
        member.id, org.id, RetentionPreferences(file_days=60), updated_by=admin.id
    )
    assert merged == {"meeting_days": 30, "auto_delete": False, "file_days": 60}
    assert (await services.user_data.get_data_retention_status(member.id, org.id)).preferences == merged


@pytest.mark.asyncio
async def test_saved_preferences_shape_default_schedules(services, session_factory, clock) -> None:
    org = await create_organization(session_factory)
    admin = await create_member(session_factory, org.id, role="admin")
    member = await create_member(session_factory, org.id)
    opted_out = await create_member(session_factory, org.id)
    await services.user_data.update_data_retention_preferences(
        member.id, org.id, RetentionPreferences(meeting_days=10), updated_by=admin.id
    )
    await services.user_data.update_data_retention_preferences(
        opted_out.id, org.id, RetentionPreferences(auto_delete=False, meeting_days=10), updated_by=admin.id
    )

    shortened = await services.retention.apply_default_schedule(org.id, "meeting", "m-1", owner_id=member.id)
    assert shortened is not None
    assert shortened.delete_after == clock() + timedelta(days=10)

    # No action_days preference, so the organization default still applies.
    action = await services.retention.apply_default_schedule(org.id, "action", "a-1", owner_id=member.id)
    assert action.delete_after == clock() + timedelta(days=180)

    assert await services.retention.apply_default_schedule(org.id, "meeting", "m-2", owner_id=opted_out.id) is None
    assert await services.retention.can_delete_data(org.id, "meeting", "m-2") is False

    ownerless = await services.retention.apply_default_schedule(org.id, "meeting", "m-3")
    assert ownerless.delete_after == clock() + timedelta(days=90)
