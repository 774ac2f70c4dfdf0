from __future__ import annotations

from datetime import timedelta

import pytest
from starlette.requests import Request

from maestro.core.errors import AuditWriteError, ValidationError
from maestro.domain.enums import AuthAction, DataAction, FileAction, SecurityEvent, Severity
from maestro.persistence.db import build_engine, build_session_factory
from maestro.persistence.guards import OrganizationScopeError
from maestro.services.audit import (
    AuditFilters,
    AuditLogger,
    classify_severity,
    request_context_from,
    sanitize_metadata,
)
from maestro.services.telemetry import counters_snapshot


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "api_key": "mmk_abc",
        "Authorization": "Bearer abc",
        "nested": {"confirmation_code": "123", "safe": 1},
        "items": [{"wrapped_key": "xyz"}, {"file_name": "notes.txt"}],
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"] == {"confirmation_code": "[REDACTED]", "safe": 1}
    assert sanitized["items"] == [{"wrapped_key": "[REDACTED]"}, {"file_name": "notes.txt"}]


@pytest.mark.parametrize(
    ("event", "severity"),
    [
        (SecurityEvent.UNAUTHORIZED_ACCESS, Severity.CRITICAL),
        (SecurityEvent.DATA_BREACH_ATTEMPT, Severity.CRITICAL),
        (SecurityEvent.SUSPICIOUS_ACTIVITY, Severity.HIGH),
        (SecurityEvent.ENCRYPTION_KEY_ROTATION, Severity.MEDIUM),
        (SecurityEvent.DECRYPTION_FAILURE, Severity.LOW),
        (SecurityEvent.INVALID_CONFIRMATION_CODE, Severity.LOW),
    ],
)
def test_severity_classification(event: SecurityEvent, severity: Severity) -> None:
    assert classify_severity(event) == severity


def test_request_context_prefers_first_forwarded_hop() -> None:
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [
                (b"x-forwarded-for", b"203.0.113.9, 10.0.0.1"),
                (b"user-agent", b"pytest-agent"),
                (b"x-session-id", b"sess-1"),
                (b"x-request-id", b"req-1"),
            ],
            "client": ("10.0.0.5", 5123),
        }
    )
    context = request_context_from(request)
    assert context.ip_address == "203.0.113.9"
    assert context.user_agent == "pytest-agent"
    assert context.session_id == "sess-1"
    assert context.request_id == "req-1"

    direct = request_context_from(Request({"type": "http", "headers": [], "client": ("10.0.0.5", 5123)}))
    assert direct.ip_address == "10.0.0.5"
    assert request_context_from(None).ip_address is None


@pytest.mark.asyncio
async def test_helpers_share_one_envelope_and_redact(services) -> None:
    audit = services.audit
    await audit.log_auth_event(
        AuthAction.LOGIN,
        organization_id="org-a",
        user_id="u1",
        success=False,
        failure_reason="bad key",
        extra={"api_key": "mmk_leaked", "client": "cli"},
    )
    await audit.log_data_access(DataAction.VIEW, "meeting", "m1", organization_id="org-a", user_id="u1")
    await audit.log_file_operation(
        FileAction.UPLOAD, "f1", organization_id="org-a", user_id="u1", file_name="a.vtt", file_size=10
    )
    await audit.log_api_access("GET", "/v1/health", 200, organization_id="org-a", user_id="u1", latency_ms=3.5)

    entries = await audit.query_audit_logs("org-a")
    by_action = {entry.action: entry for entry in entries}
    assert set(by_action) == {"auth.login", "data.view", "file.upload", "api.access"}

    login = by_action["auth.login"]
    assert login.outcome == "failure"
    assert login.metadata_json["kind"] == "auth"
    assert login.metadata_json["extra"] == {"api_key": "[REDACTED]", "client": "cli"}
    assert by_action["file.upload"].metadata_json["file_size"] == 10
    assert by_action["api.access"].resource_id == "/v1/health"


@pytest.mark.asyncio
async def test_queries_never_cross_organizations(services) -> None:
    await services.audit.log("meeting.view", "meeting", organization_id="org-a", user_id="u1", resource_id="m1")
    await services.audit.log("meeting.view", "meeting", organization_id="org-b", user_id="u2", resource_id="m2")

    entries = await services.audit.query_audit_logs("org-a")
    assert [entry.organization_id for entry in entries] == ["org-a"]

    with pytest.raises(OrganizationScopeError):
        await services.audit.query_audit_logs("")
    with pytest.raises(OrganizationScopeError):
        await services.audit.log("meeting.view", "meeting", organization_id="")


@pytest.mark.asyncio
async def test_query_filters_and_limits(services, clock) -> None:
    start = clock()
    for index in range(5):
        await services.audit.log(
            "meeting.view", "meeting", organization_id="org-a", user_id=f"u{index % 2}", resource_id=f"m{index}"
        )
        clock.advance(minutes=10)

    newest_first = await services.audit.query_audit_logs("org-a", AuditFilters(limit=2))
    assert [entry.resource_id for entry in newest_first] == ["m4", "m3"]

    second_page = await services.audit.query_audit_logs("org-a", AuditFilters(limit=2, offset=2))
    assert [entry.resource_id for entry in second_page] == ["m2", "m1"]

    window = await services.audit.query_audit_logs(
        "org-a", AuditFilters(start=start + timedelta(minutes=5), end=start + timedelta(minutes=25))
    )
    assert sorted(entry.resource_id for entry in window) == ["m1", "m2"]

    by_user = await services.audit.query_audit_logs("org-a", AuditFilters(user_id="u1"))
    assert sorted(entry.resource_id for entry in by_user) == ["m1", "m3"]

    with pytest.raises(ValidationError):
        await services.audit.query_audit_logs("org-a", AuditFilters(limit=0))
    with pytest.raises(ValidationError):
        await services.audit.query_audit_logs("org-a", AuditFilters(start=start, end=start - timedelta(days=1)))


@pytest.mark.asyncio
async def test_query_limit_is_capped(session_factory, clock) -> None:
    audit = AuditLogger(session_factory, clock=clock, query_max_limit=3)
    for index in range(5):
        await audit.log("meeting.view", "meeting", organization_id="org-a", resource_id=f"m{index}")
    assert len(await audit.query_audit_logs("org-a", AuditFilters(limit=100))) == 3


@pytest.mark.asyncio
async def test_audit_stats(services, clock) -> None:
    await services.audit.log("meeting.view", "meeting", organization_id="org-a", user_id="u1")
    await services.audit.log("meeting.view", "meeting", organization_id="org-a", user_id="u2")
    await services.audit.log_security_event(
        SecurityEvent.SUSPICIOUS_ACTIVITY, organization_id="org-a", user_id="u2", detail="odd"
    )
    await services.audit.log_data_access(DataAction.EXPORT, "user", "u1", organization_id="org-a", user_id="u1")
    await services.audit.log("meeting.view", "meeting", organization_id="org-b", user_id="u9")

    stats = await services.audit.get_audit_stats("org-a", days=7)
    assert stats.total_events == 4
    assert stats.unique_users == 2
    assert stats.security_events == 1
    assert stats.data_access_events == 1
    assert stats.top_actions[0] == ("meeting.view", 2)

    clock.advance(days=8)
    assert (await services.audit.get_audit_stats("org-a", days=7)).total_events == 0
    with pytest.raises(ValidationError):
        await services.audit.get_audit_stats("org-a", days=0)


@pytest.mark.asyncio
async def test_failed_write_is_dead_lettered_unless_critical(settings, clock) -> None:
    # No schema on this engine, so every insert fails.
    engine = build_engine(settings.database_url)
    try:
        audit = AuditLogger(build_session_factory(engine), clock=clock, dead_letter_max=2)

        assert await audit.log("meeting.view", "meeting", organization_id="org-a") is None
        assert len(audit.dead_letters) == 1
        assert audit.dead_letters[0]["action"] == "meeting.view"
        assert counters_snapshot()["audit.dead_letters"] == 1

        with pytest.raises(AuditWriteError):
            await audit.log("access.grant", "user", organization_id="org-a", critical=True)
        assert counters_snapshot()["audit.critical_write_failures"] == 1

        await audit.log("meeting.view", "meeting", organization_id="org-a")
        await audit.log("meeting.view", "meeting", organization_id="org-a")
        assert len(audit.dead_letters) == 2
    finally:
        await engine.dispose()
