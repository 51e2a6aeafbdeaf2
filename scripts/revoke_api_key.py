from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.config import get_settings
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import revoke_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    parser.add_argument("--org", required=True, help="Organization identifier")
    parser.add_argument("--actor", default="revoke_api_key", help="Actor recorded in the audit log")
    return parser


async def _revoke_key(args: argparse.Namespace) -> int:
    # Mark the key revoked without deleting history for audits.
    store = TenantStore(get_settings().tenant_root)
    await store.initialize()
    await revoke_api_key(store, organization_id=args.org, key_id=args.key_id, actor_id=args.actor)
    print(f"Revoked API key {args.key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
