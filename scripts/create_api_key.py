from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys

from tenantgate.core.config import get_settings
from tenantgate.domain.models import Permission, utc_now
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import issue_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for an organization or team")
    parser.add_argument("--org", required=True, help="Organization identifier")
    parser.add_argument("--team", default=None, help="Team identifier for a team-scoped key")
    parser.add_argument("--user-id", required=True, help="Existing team member that owns the key")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        help="Custom permission (repeatable); replaces the owner's role permissions",
    )
    parser.add_argument("--expires-days", type=int, default=None, help="Expire the key after N days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = TenantStore(settings.tenant_root)
    await store.initialize()
    permissions = [Permission(value) for value in args.permission]
    expires_at = utc_now() + timedelta(days=args.expires_days) if args.expires_days else None

    issued = await issue_api_key(
        store,
        organization_id=args.org,
        team_id=args.team,
        created_by=args.user_id,
        name=args.name,
        permissions=permissions,
        expires_at=expires_at,
        settings=settings,
    )

    print("API key created:")
    print(f"  key_id: {issued.api_key.id}")
    print(f"  organization_id: {issued.api_key.organization_id}")
    print(f"  team_id: {issued.api_key.team_id or ''}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
