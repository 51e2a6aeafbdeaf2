from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.config import get_settings
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import normalize_role
from tenantgate.services.tenancy.bootstrap import DefaultOrganizationInitializer


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create the default organization and optionally seat a user")
    parser.add_argument("--legacy-key", default=None, help="Legacy single-tenant key to migrate")
    parser.add_argument("--user-id", default=None, help="User to add to the default team")
    parser.add_argument("--email", default=None, help="Email for --user-id")
    parser.add_argument("--display-name", default=None, help="Display name for --user-id")
    parser.add_argument("--role", default="member", help="Role: owner|admin|member|viewer")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = TenantStore(settings.tenant_root)
    await store.initialize()
    initializer = DefaultOrganizationInitializer(store, settings=settings)
    await initializer.initialize(legacy_api_key=args.legacy_key)
    organization = await initializer.ensure_default_organization()
    print(f"Default organization ready: {organization.id}")

    if args.user_id:
        member = await initializer.add_user_to_default_org(
            args.user_id,
            args.email or f"{args.user_id}@localhost",
            args.display_name or args.user_id,
            normalize_role(args.role),
        )
        print(f"User {member.user_id} seated as {member.role.value}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"seed_default_org failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
