from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from maestro.apps.api.main import create_app
from maestro.domain.models import AuditLogEntry
from maestro.tests.utils.factories import (
    audit_actions,
    create_api_key,
    create_meeting,
    create_member,
    create_organization,
    create_personal_records,
)


@pytest.fixture
async def client(services, settings):
    # Drive the app in-process against the per-test database.
    app = create_app(services, settings=settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _member_with_key(session_factory, org_id: str, role: str):
    member = await create_member(session_factory, org_id, role=role)
    _, headers = await create_api_key(session_factory, member)
    return member, headers


@pytest.mark.asyncio
async def test_health_reports_key_fingerprint(client, services) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["master_key_id"] == services.keys.master_key_id
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_requests_without_valid_key_are_rejected(client, session_factory) -> None:
    org = await create_organization(session_factory)
    member = await create_member(session_factory, org.id)
    _, revoked_headers = await create_api_key(session_factory, member, revoked=True)

    missing = await client.get("/v1/user-data/retention")
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    invalid = await client.get("/v1/user-data/retention", headers={"Authorization": "Bearer mmk_nope_nope"})
    assert invalid.status_code == 401

    malformed = await client.get("/v1/user-data/retention", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401

    revoked = await client.get("/v1/user-data/retention", headers=revoked_headers)
    assert revoked.status_code == 401
    assert "auth.login" in await audit_actions(session_factory, org.id)


@pytest.mark.asyncio
async def test_authenticated_requests_are_audited(client, session_factory) -> None:
    org = await create_organization(session_factory)
    member, headers = await _member_with_key(session_factory, org.id, "user")

    ok = await client.get("/v1/user-data/retention", headers={**headers, "X-Request-Id": "req-access"})
    assert ok.status_code == 200
    denied = await client.get("/v1/admin/audit", headers=headers)
    assert denied.status_code == 403
    await client.get("/v1/health")

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.organization_id == org.id, AuditLogEntry.action == "api.access")
                .order_by(AuditLogEntry.id)
            )
        ).scalars().all()
    assert [row.resource_id for row in rows] == ["/v1/user-data/retention", "/v1/admin/audit"]
    assert all(row.user_id == member.id for row in rows)
    assert rows[0].request_id == "req-access"
    assert rows[0].metadata_json["method"] == "GET"
    assert rows[0].metadata_json["status_code"] == 200
    assert rows[0].outcome == "success"
    assert rows[1].metadata_json["status_code"] == 403
    assert rows[1].outcome == "failure"


@pytest.mark.asyncio
async def test_admin_surfaces_reject_plain_users(client, session_factory) -> None:
    org = await create_organization(session_factory)
    _, headers = await _member_with_key(session_factory, org.id, "user")

    response = await client.get("/v1/admin/audit", headers=headers)
    assert response.status_code == 403
    body = response.json()
    assert body["error"]["code"] == "AUTH_FORBIDDEN"
    assert "meta" in body
    assert "security.unauthorized_access" in await audit_actions(session_factory, org.id)


@pytest.mark.asyncio
async def test_audit_listing_is_scoped_to_the_caller(client, services, session_factory) -> None:
    org = await create_organization(session_factory)
    other_org = await create_organization(session_factory)
    admin, headers = await _member_with_key(session_factory, org.id, "admin")
    for index in range(3):
        await services.audit.log("meeting.view", "meeting", organization_id=org.id, user_id=admin.id, resource_id=f"m{index}")
    await services.audit.log("meeting.view", "meeting", organization_id=other_org.id, resource_id="foreign")

    response = await client.get(
        "/v1/admin/audit",
        params={"action": "meeting.view", "limit": 2, "organization_id": other_org.id},
        headers=headers,
    )
    assert response.status_code == 200
    page = response.json()["data"]
    assert [item["resource_id"] for item in page["items"]] == ["m2", "m1"]
    assert page["next_offset"] == 2

    second = await client.get("/v1/admin/audit", params={"action": "meeting.view", "offset": 2}, headers=headers)
    assert [item["resource_id"] for item in second.json()["data"]["items"]] == ["m0"]


@pytest.mark.asyncio
async def test_json_export_then_rate_limit(client, session_factory) -> None:
    org = await create_organization(session_factory)
    member, headers = await _member_with_key(session_factory, org.id, "user")
    await create_personal_records(session_factory, member)
    await create_meeting(session_factory, org.id, member.id, title="Design review")

    response = await client.post("/v1/user-data/export", json={"format": "json"}, headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["user_id"] == member.id
    assert data["personal_data"]["profile"]["email"] == member.email
    assert data["organization_data"]["meetings"][0]["title"] == "Design review"

    again = await client.post("/v1/user-data/export", json={"format": "json"}, headers=headers)
    assert again.status_code == 429
    assert again.headers["Retry-After"] == "86400"
    error = again.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"]["retry_after_s"] == 86400

    history = await client.get("/v1/user-data/export", headers=headers)
    assert [item["status"] for item in history.json()["data"]] == ["completed"]


@pytest.mark.asyncio
async def test_colleague_data_needs_more_than_membership(client, session_factory) -> None:
    org = await create_organization(session_factory)
    _, headers = await _member_with_key(session_factory, org.id, "user")
    colleague = await create_member(session_factory, org.id)
    _, admin_headers = await _member_with_key(session_factory, org.id, "admin")

    export = await client.post(
        "/v1/user-data/export", json={"format": "json", "user_id": colleague.id}, headers=headers
    )
    assert export.status_code == 403
    history = await client.get("/v1/user-data/export", params={"user_id": colleague.id}, headers=headers)
    assert history.status_code == 403
    retention = await client.get("/v1/user-data/retention", params={"user_id": colleague.id}, headers=headers)
    assert retention.status_code == 403

    allowed = await client.get("/v1/user-data/retention", params={"user_id": colleague.id}, headers=admin_headers)
    assert allowed.status_code == 200
    assert allowed.json()["data"]["user_id"] == colleague.id


@pytest.mark.asyncio
async def test_csv_export_is_returned_as_attachment(client, session_factory) -> None:
    org = await create_organization(session_factory)
    member, headers = await _member_with_key(session_factory, org.id, "user")
    await create_meeting(session_factory, org.id, member.id, title="Budget")

    response = await client.post("/v1/user-data/export", json={"format": "csv"}, headers=headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"].startswith('attachment; filename="export-')
    lines = response.text.splitlines()
    assert lines[0] == "section,record_type,record_id,field,value"
    assert any(line.startswith("organization_data,meetings,") and line.endswith(",title,Budget") for line in lines)


@pytest.mark.asyncio
async def test_unknown_export_format_is_a_validation_error(client, session_factory) -> None:
    org = await create_organization(session_factory)
    _, headers = await _member_with_key(session_factory, org.id, "user")
    response = await client.post("/v1/user-data/export", json={"format": "xml"}, headers=headers)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_two_phase_deletion_flow(client, session_factory) -> None:
    org = await create_organization(session_factory)
    owner, owner_headers = await _member_with_key(session_factory, org.id, "owner")
    member, member_headers = await _member_with_key(session_factory, org.id, "user")

    self_service = await client.post("/v1/user-data/delete", json={"reason": "please forget me"}, headers=member_headers)
    assert self_service.status_code == 403

    created = await client.post(
        "/v1/user-data/delete",
        json={"reason": "please forget me", "user_id": member.id},
        headers=owner_headers,
    )
    assert created.status_code == 201
    request_id = created.json()["data"]["request"]["id"]
    code = created.json()["data"]["confirmation_code"]
    assert created.json()["data"]["request"]["status"] == "pending"

    wrong = await client.put(
        "/v1/user-data/delete",
        json={"deletion_request_id": request_id, "confirmation_code": "guess"},
        headers=owner_headers,
    )
    assert wrong.status_code == 400
    assert wrong.json()["error"]["code"] == "INVALID_CONFIRMATION_CODE"

    status = await client.get(f"/v1/user-data/delete/{request_id}", headers=member_headers)
    assert status.status_code == 200
    assert status.json()["data"]["status"] == "pending"

    confirmed = await client.put(
        "/v1/user-data/delete",
        json={"deletion_request_id": request_id, "confirmation_code": code},
        headers=owner_headers,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["status"] == "completed"
    assert confirmed.json()["data"]["completed_steps"] == ["personal_data", "organization_data", "audit_trail"]

    replay = await client.put(
        "/v1/user-data/delete",
        json={"deletion_request_id": request_id, "confirmation_code": code},
        headers=owner_headers,
    )
    assert replay.status_code == 409
    assert replay.json()["error"]["code"] == "INVALID_REQUEST_STATE"

    # The erased member's credentials went with the account.
    gone = await client.get("/v1/user-data/retention", headers=member_headers)
    assert gone.status_code == 401


@pytest.mark.asyncio
async def test_admin_manages_grants(client, session_factory) -> None:
    org = await create_organization(session_factory)
    _, admin_headers = await _member_with_key(session_factory, org.id, "admin")
    member, member_headers = await _member_with_key(session_factory, org.id, "user")

    denied = await client.post(
        "/v1/admin/access/grants",
        json={"user_id": member.id, "resource_type": "company", "permission": "write"},
        headers=member_headers,
    )
    assert denied.status_code == 403

    created = await client.post(
        "/v1/admin/access/grants",
        json={"user_id": member.id, "resource_type": "company", "permission": "write", "resource_id": "acme"},
        headers=admin_headers,
    )
    assert created.status_code == 201
    assert created.json()["data"]["resource_id"] == "acme"
    assert created.json()["data"]["is_active"] is True

    listed = await client.get("/v1/admin/access/grants", headers=admin_headers)
    assert [item["id"] for item in listed.json()["data"]] == [created.json()["data"]["id"]]

    revoked = await client.delete(
        "/v1/admin/access/grants",
        params={"user_id": member.id, "resource_type": "company"},
        headers=admin_headers,
    )
    assert revoked.json()["data"] == {"revoked": 1}


@pytest.mark.asyncio
async def test_retention_admin_endpoints(client, services, session_factory, clock) -> None:
    org = await create_organization(session_factory)
    owner, headers = await _member_with_key(session_factory, org.id, "owner")
    meeting = await create_meeting(session_factory, org.id, owner.id)

    too_long = await client.put("/v1/admin/retention/policies/meeting", json={"retention_days": 400}, headers=headers)
    assert too_long.status_code == 422
    assert too_long.json()["error"]["details"]["ceiling_days"] == 365

    updated = await client.put("/v1/admin/retention/policies/meeting", json={"retention_days": 30}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["data"]["source"] == "explicit"

    scheduled = await client.post(
        "/v1/admin/retention/schedules",
        json={"resource_type": "meeting", "resource_id": meeting.id},
        headers=headers,
    )
    assert scheduled.status_code == 201
    assert scheduled.json()["data"]["state"] == "scheduled"

    clock.advance(days=31)
    sweep = await client.post("/v1/admin/retention/sweep", headers=headers)
    assert sweep.json()["data"]["deleted"] == 1

    stats = await client.get("/v1/admin/retention/stats", headers=headers)
    assert stats.json()["data"]["schedules_by_state"] == {"deleted": 1}

    report = await client.get("/v1/admin/retention/compliance", headers=headers)
    assert report.status_code == 200
    assert report.json()["data"]["compliance_mode"] == "standard"
    assert report.json()["data"]["overdue_deletions"] == 0


@pytest.mark.asyncio
async def test_key_rotation_is_owner_only(client, session_factory) -> None:
    org = await create_organization(session_factory)
    _, owner_headers = await _member_with_key(session_factory, org.id, "owner")
    _, admin_headers = await _member_with_key(session_factory, org.id, "admin")

    denied = await client.post("/v1/admin/crypto/rotate", headers=admin_headers)
    assert denied.status_code == 403

    rotated = await client.post("/v1/admin/crypto/rotate", headers=owner_headers)
    assert rotated.status_code == 200
    assert rotated.json()["data"]["keys_rewrapped"] == 0
    assert "security.encryption_key_rotation" in await audit_actions(session_factory, org.id)

    missing = await client.delete("/v1/admin/crypto/keys/dek_unknown", headers=owner_headers)
    assert missing.status_code == 404
