from __future__ import annotations

import argparse

import pytest

from tenantgate.core.config import Settings
from tenantgate.core.errors import NotFoundError, QuotaExceededError, TenantErrorCode
from tenantgate.domain.models import Role
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import hash_api_key, list_api_keys, revoke_api_key
from tenantgate.tests.utils.tenants import issue_key, seed_member, seed_organization


@pytest.mark.asyncio
async def test_issue_stores_hash_of_secret_and_audits(store: TenantStore, settings: Settings) -> None:
    await seed_organization(store, settings)
    issued = await issue_key(store, settings)

    stored = await store.get_api_key("acme", issued.api_key.id)
    assert stored is not None
    assert stored.key == issued.raw_key
    assert stored.key_hash == hash_api_key(issued.raw_key.split(".", 1)[1])
    quota = await store.get_quota("acme")
    assert quota is not None and quota.current_api_keys == 1

    entries = await store.get_audit_logs("acme")
    assert entries[0].action == "auth.api_key.created"
    assert entries[0].resource_id == issued.api_key.id


@pytest.mark.asyncio
async def test_plaintext_persistence_can_be_disabled(store: TenantStore, settings: Settings) -> None:
    masked_settings = settings.model_copy(update={"persist_plaintext_keys": False})
    await seed_organization(store, masked_settings)
    issued = await issue_key(store, masked_settings)
    stored = await store.get_api_key("acme", issued.api_key.id)
    assert stored is not None
    assert stored.key != issued.raw_key
    assert stored.key.endswith("...")


@pytest.mark.asyncio
async def test_issue_enforces_key_ceiling_and_membership(store: TenantStore, settings: Settings) -> None:
    limited = settings.model_copy(update={"quota_max_api_keys": 1})
    await seed_organization(store, limited)
    await issue_key(store, limited)
    with pytest.raises(QuotaExceededError):
        await issue_key(store, limited)

    with pytest.raises(NotFoundError) as exc_info:
        await issue_key(store, settings, created_by="stranger")
    assert exc_info.value.code == TenantErrorCode.USER_NOT_FOUND


@pytest.mark.asyncio
async def test_revoke_is_terminal_and_releases_key_slot(store: TenantStore, settings: Settings) -> None:
    await seed_organization(store, settings)
    issued = await issue_key(store, settings)
    revoked = await revoke_api_key(store, organization_id="acme", key_id=issued.api_key.id, actor_id="admin")
    assert revoked.status == "revoked"

    quota = await store.get_quota("acme")
    assert quota is not None and quota.current_api_keys == 0
    entries = await store.get_audit_logs("acme")
    assert entries[0].action == "auth.api_key.revoked"
    assert entries[0].user_id == "admin"

    with pytest.raises(NotFoundError):
        await revoke_api_key(store, organization_id="acme", key_id="missing")


@pytest.mark.asyncio
async def test_list_filters_by_team_and_status(store: TenantStore, settings: Settings) -> None:
    await seed_organization(store, settings)
    await seed_member(store, settings, user_id="member-1", role=Role.MEMBER)
    first = await issue_key(store, settings)
    await issue_key(store, settings, created_by="member-1", team_id="default")
    await revoke_api_key(store, organization_id="acme", key_id=first.api_key.id)

    assert len(await list_api_keys(store, organization_id="acme")) == 2
    team_keys = await list_api_keys(store, organization_id="acme", team_id="default")
    assert [key.created_by for key in team_keys] == ["member-1"]
    revoked = await list_api_keys(store, organization_id="acme", status="revoked")
    assert [key.id for key in revoked] == [first.api_key.id]


@pytest.mark.asyncio
async def test_revoke_script_marks_key_revoked(
    store: TenantStore, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    from scripts import revoke_api_key as revoke_script

    await seed_organization(store, settings)
    issued = await issue_key(store, settings)
    monkeypatch.setattr(revoke_script, "get_settings", lambda: settings)

    args = argparse.Namespace(key_id=issued.api_key.id, org="acme", actor="revoke_api_key")
    assert await revoke_script._revoke_key(args) == 0

    # The script uses its own store, so read from disk rather than this store's cache.
    fresh = TenantStore(settings.tenant_root)
    stored = await fresh.get_api_key("acme", issued.api_key.id)
    assert stored is not None and stored.status == "revoked"
