from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from maestro.core.errors import MaestroError
from maestro.domain.models import ApiKey, Organization, User
from maestro.persistence.db import dispose_engine, get_session_factory
from maestro.services.audit import AuditLogger
from maestro.services.auth.api_keys import generate_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for an organization member")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    parser.add_argument("--role", required=True, help="Role: owner|admin|user")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument(
        "--compliance-mode",
        default="standard",
        help="Compliance mode used when the organization is created: standard|gdpr|hipaa|sox",
    )
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session_factory = get_session_factory()
    audit = AuditLogger(session_factory)

    async with session_factory() as session:
        organization = await session.get(Organization, args.organization)
        if organization is None:
            organization = Organization(
                id=args.organization,
                name=args.organization,
                compliance_mode=args.compliance_mode,
            )
            session.add(organization)
            await session.flush()
        user = await session.get(User, user_id)
        if user is None:
            user = User(
                id=user_id,
                organization_id=organization.id,
                email=args.email,
                role=role.value,
                is_active=True,
            )
            session.add(user)
        else:
            # Ensure existing users stay organization-bound when issuing new keys.
            if user.organization_id != organization.id:
                raise ValueError("User organization does not match requested organization")
            user.role = role.value
            if args.email:
                user.email = args.email
        # Flush the user row before inserting API keys to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                organization_id=organization.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await audit.log(
            "auth.api_key_created",
            "user",
            organization_id=organization.id,
            user_id=user.id,
            resource_id=user.id,
            session=session,
            critical=True,
        )
        await session.commit()
    await dispose_engine()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except (MaestroError, ValueError) as exc:
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
