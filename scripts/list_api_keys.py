from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys

from tenantgate.core.config import get_settings
from tenantgate.domain.models import utc_now
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import list_api_keys


def _build_parser() -> argparse.ArgumentParser:
    # Keep listing scoped to one organization to avoid accidental cross-tenant operator exposure.
    parser = argparse.ArgumentParser(description="List API keys for an organization")
    parser.add_argument("--org", required=True, help="Organization identifier")
    parser.add_argument("--team", default=None, help="Only keys scoped to this team")
    parser.add_argument("--status", choices=["active", "revoked", "expired"], default=None)
    parser.add_argument(
        "--inactive-days",
        type=int,
        default=90,
        help="Highlight keys inactive for at least this number of days",
    )
    parser.add_argument(
        "--inactive-only",
        action="store_true",
        help="Show only inactive or expired keys",
    )
    return parser


async def _list_keys(args: argparse.Namespace) -> int:
    # Print lifecycle metadata only; key strings and hashes stay out of operator output.
    store = TenantStore(get_settings().tenant_root)
    keys = await list_api_keys(store, organization_id=args.org, team_id=args.team, status=args.status)

    now = utc_now()
    threshold = timedelta(days=max(1, int(args.inactive_days)))
    print("key_id\tname\tteam_id\tcreated_by\tstatus\tcreated_at\tlast_used_at\texpires_at\ttotal_requests\tinactive_days")
    for api_key in sorted(keys, key=lambda item: item.created_at, reverse=True):
        is_expired = api_key.status == "expired" or (
            api_key.expires_at is not None and api_key.expires_at <= now
        )
        anchor = api_key.last_used_at or api_key.created_at
        inactive_days = max(0, int((now - anchor).days))
        if args.inactive_only and timedelta(days=inactive_days) < threshold and not is_expired:
            continue
        total_requests = api_key.usage_stats.total_requests if api_key.usage_stats else 0
        print(
            f"{api_key.id}\t{api_key.name}\t{api_key.team_id or ''}\t{api_key.created_by}\t"
            f"{api_key.status}\t{api_key.created_at.isoformat()}\t"
            f"{api_key.last_used_at.isoformat() if api_key.last_used_at else ''}\t"
            f"{api_key.expires_at.isoformat() if api_key.expires_at else ''}\t"
            f"{total_requests}\t{inactive_days}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_keys(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_api_keys failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
