from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OrganizationScopeError(RuntimeError):
    # Raised when a query is built without an organization boundary.
    message: str


def require_organization_id(organization_id: str | None) -> str:
    if not organization_id:
        raise OrganizationScopeError("Organization predicate required but organization_id is missing")
    return organization_id


def org_predicate(model, organization_id: str) -> object:
    # Build organization predicates through a single helper so every query is scoped.
    require_organization_id(organization_id)
    return model.organization_id == organization_id
