from __future__ import annotations

from dataclasses import dataclass

from maestro.core.clock import Clock, utc_now
from maestro.core.config import Settings, get_settings
from maestro.persistence.db import SessionFactory
from maestro.services.audit import AuditLogger
from maestro.services.authz import AccessControlService
from maestro.services.crypto import EnvelopeService, KeyManager, KeyStore, SqlKeyStore
from maestro.services.retention import DataRetentionService
from maestro.services.user_data import UserDataManagementService


@dataclass(frozen=True)
class MaestroServices:
    """Wired service graph shared by the API, the worker and scripts."""

    session_factory: SessionFactory
    audit: AuditLogger
    keys: KeyManager
    envelope: EnvelopeService
    access: AccessControlService
    retention: DataRetentionService
    user_data: UserDataManagementService


def build_services(
    session_factory: SessionFactory,
    *,
    settings: Settings | None = None,
    clock: Clock = utc_now,
    key_store: KeyStore | None = None,
    lease_holder: str | None = None,
) -> MaestroServices:
    # Raises MasterKeyMissingError before anything else is constructed.
    resolved = settings or get_settings()
    keys = KeyManager.from_settings(key_store or SqlKeyStore(session_factory), settings=resolved, clock=clock)
    audit = AuditLogger(
        session_factory,
        clock=clock,
        dead_letter_max=resolved.audit_dead_letter_max,
        query_max_limit=resolved.audit_query_max_limit,
    )
    envelope = EnvelopeService(keys, audit=audit)
    access = AccessControlService(session_factory, audit=audit, clock=clock)
    retention = DataRetentionService(
        session_factory,
        audit=audit,
        envelope=envelope,
        clock=clock,
        lease_holder=lease_holder,
        batch_size=resolved.retention_sweep_batch_size,
        lease_seconds=resolved.retention_sweep_lease_seconds,
    )
    user_data = UserDataManagementService(
        session_factory,
        access=access,
        audit=audit,
        retention=retention,
        envelope=envelope,
        clock=clock,
        export_cooldown_hours=resolved.gdpr_export_cooldown_hours,
        org_export_limit_per_day=resolved.gdpr_org_export_limit_per_day,
        audit_trail_retention_days=resolved.gdpr_audit_trail_retention_days,
    )
    return MaestroServices(
        session_factory=session_factory,
        audit=audit,
        keys=keys,
        envelope=envelope,
        access=access,
        retention=retention,
        user_data=user_data,
    )
