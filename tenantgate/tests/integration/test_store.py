from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import os
from pathlib import Path

import pytest

from tenantgate.core.errors import ApiKeyStateError, NotFoundError, StoreError
from tenantgate.domain.models import (
    Organization,
    OrganizationSettings,
    Team,
    TenantApiKey,
    UsageQuota,
    utc_now,
)
from tenantgate.persistence.store import TenantStore
from tenantgate.services.audit import build_audit_entry
from tenantgate.tests.utils.tenants import make_quota


def _organization(organization_id: str = "acme") -> Organization:
    return Organization(
        id=organization_id,
        name=organization_id,
        display_name="Acme",
        owner_id="owner-1",
        settings=OrganizationSettings(default_storage_quota=1000),
    )


def _api_key(key_id: str = "k1") -> TenantApiKey:
    return TenantApiKey(
        id=key_id,
        organization_id="acme",
        created_by="owner-1",
        name="ci",
        key="masked",
        key_hash="0" * 64,
    )


@pytest.mark.asyncio
async def test_documents_round_trip_through_fresh_store(store: TenantStore) -> None:
    await store.save_organization(_organization())
    await store.save_api_key("acme", _api_key())
    await store.save_quota("acme", make_quota(storage_used=5))

    # A second store instance has an empty cache and must read from disk.
    fresh = TenantStore(store.root)
    organization = await fresh.get_organization("acme")
    assert organization is not None
    assert organization.display_name == "Acme"
    assert (await fresh.get_api_key("acme", "k1")) is not None
    quota = await fresh.get_quota("acme")
    assert quota is not None and quota.storage_used == 5
    assert (store.root / "acme" / "keys" / "k1.json").is_file()
    assert [org.id for org in await fresh.list_organizations()] == ["acme"]


@pytest.mark.asyncio
async def test_missing_documents_return_none_or_empty(store: TenantStore) -> None:
    assert await store.get_organization("nope") is None
    assert await store.get_team("nope", "t1") is None
    assert await store.get_quota("nope", "t1") is None
    assert await store.list_teams("nope") == []
    assert await store.list_api_keys("nope") == []
    assert await store.get_audit_logs("nope") == []


@pytest.mark.asyncio
async def test_reads_return_copies_that_do_not_leak_into_cache(store: TenantStore) -> None:
    await store.save_organization(_organization())
    first = await store.get_organization("acme")
    assert first is not None
    first.display_name = "mutated"
    second = await store.get_organization("acme")
    assert second is not None
    assert second.display_name == "Acme"


@pytest.mark.asyncio
async def test_corrupt_documents_raise_store_error(store: TenantStore) -> None:
    org_dir = Path(store.root) / "broken"
    org_dir.mkdir(parents=True)
    (org_dir / "organization.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        await store.get_organization("broken")

    (org_dir / "quota.json").write_text('{"storage_limit": "lots"}', encoding="utf-8")
    with pytest.raises(StoreError):
        await store.get_quota("broken")


@pytest.mark.asyncio
async def test_ids_cannot_escape_the_tenant_root(store: TenantStore) -> None:
    with pytest.raises(ValueError):
        await store.get_organization("../outside")
    with pytest.raises(ValueError):
        await store.get_team("acme", "..")


@pytest.mark.asyncio
async def test_key_status_terminal_states_are_final(store: TenantStore) -> None:
    await store.save_api_key("acme", _api_key())
    revoked = await store.update_api_key_status("acme", "k1", "revoked")
    assert revoked.status == "revoked"
    with pytest.raises(ApiKeyStateError):
        await store.update_api_key_status("acme", "k1", "active")
    with pytest.raises(NotFoundError):
        await store.update_api_key_status("acme", "missing", "revoked")


@pytest.mark.asyncio
async def test_touch_api_key_updates_usage_counters(store: TenantStore) -> None:
    await store.save_api_key("acme", _api_key())
    await store.touch_api_key("acme", "k1")
    await store.touch_api_key("acme", "k1", failed=True)
    api_key = await store.get_api_key("acme", "k1")
    assert api_key is not None
    assert api_key.last_used_at is not None
    assert api_key.usage_stats is not None
    assert api_key.usage_stats.total_requests == 2
    assert api_key.usage_stats.failed_requests == 1


@pytest.mark.asyncio
async def test_update_quota_usage_assigns_absolute_values(store: TenantStore) -> None:
    await store.save_quota("acme", make_quota(requests_used=10), "research")
    updated = await store.update_quota_usage("acme", requests_used=3, team_id="research")
    assert updated.requests_used == 3
    assert (await store.get_quota("acme")) is None
    with pytest.raises(NotFoundError):
        await store.update_quota_usage("acme", requests_used=1)


@pytest.mark.asyncio
async def test_concurrent_quota_updates_are_not_lost(store: TenantStore) -> None:
    await store.save_quota("acme", make_quota())

    def _add_request(quota: UsageQuota) -> None:
        quota.requests_used += 1

    def _add_key(quota: UsageQuota) -> None:
        quota.current_api_keys += 1

    await asyncio.gather(
        *(store.update_quota("acme", _add_request) for _ in range(5)),
        store.update_quota("acme", _add_key),
    )
    quota = await TenantStore(store.root).get_quota("acme")
    assert quota is not None
    assert quota.requests_used == 5
    assert quota.current_api_keys == 1


@pytest.mark.asyncio
async def test_failed_write_leaves_no_temp_files(store: TenantStore, monkeypatch: pytest.MonkeyPatch) -> None:
    await store.save_organization(_organization())

    def _replace_fails(src, dst):  # type: ignore[no-untyped-def]
        raise OSError("read-only filesystem")

    monkeypatch.setattr(os, "replace", _replace_fails)
    with pytest.raises(StoreError):
        await store.save_api_key("acme", _api_key())
    monkeypatch.undo()

    leftovers = [path.name for path in Path(store.root).rglob("*.tmp")]
    assert leftovers == []
    assert await TenantStore(store.root).get_api_key("acme", "k1") is None


@pytest.mark.asyncio
async def test_naive_timestamps_on_disk_are_read_as_utc(store: TenantStore) -> None:
    payload = _api_key().model_dump(mode="json")
    payload["expires_at"] = "2026-01-01T00:00:00"
    keys_dir = Path(store.root) / "acme" / "keys"
    keys_dir.mkdir(parents=True)
    (keys_dir / "k1.json").write_text(json.dumps(payload), encoding="utf-8")

    api_key = await store.get_api_key("acme", "k1")
    assert api_key is not None
    assert api_key.expires_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert api_key.expires_at <= utc_now()


@pytest.mark.asyncio
async def test_audit_log_reads_newest_first_with_limit(store: TenantStore) -> None:
    for action in ("first", "second", "third"):
        await store.append_audit_log(
            "acme",
            build_audit_entry(
                organization_id="acme",
                user_id="u1",
                action=action,
                resource="test",
                result="success",
            ),
        )
    entries = await store.get_audit_logs("acme", limit=2)
    assert [entry.action for entry in entries] == ["third", "second"]
    lines = (Path(store.root) / "acme" / "audit-log.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3


@pytest.mark.asyncio
async def test_delete_team_removes_documents(store: TenantStore) -> None:
    team = Team(id="research", organization_id="acme", name="research", display_name="R", owner_id="o")
    await store.save_team("acme", team)
    await store.save_quota("acme", make_quota(), "research")
    await store.delete_team("acme", "research")
    assert await store.get_team("acme", "research") is None
    assert await store.get_quota("acme", "research") is None
    assert await store.list_teams("acme") == []
