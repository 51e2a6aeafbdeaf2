from __future__ import annotations

import pytest

from tenantgate.core.config import Settings
from tenantgate.core.errors import TenantErrorCode
from tenantgate.domain.models import Permission, Role
from tenantgate.persistence.store import TenantStore
from tenantgate.services.gate import OperationGate, tool_event_type, tool_quota_axis
from tenantgate.services.quota import QuotaManager
from tenantgate.services.tenancy.resolver import TenantResolver
from tenantgate.services.usage_tracker import UsageEventType, UsageTracker
from tenantgate.tests.utils.tenants import issue_key, seed_member, seed_organization


def _gate(store: TenantStore, settings: Settings, resolver: TenantResolver) -> tuple[OperationGate, UsageTracker]:
    tracker = UsageTracker(store, settings=settings, batch_size=100)
    manager = QuotaManager(store, settings=settings, alert_handlers=[])
    return OperationGate(resolver, manager, tracker), tracker


def test_tool_mappings() -> None:
    assert tool_quota_axis("lighthouse-upload") == "storage"
    assert tool_quota_axis("lighthouse-download") == "bandwidth"
    assert tool_quota_axis("lighthouse-list-files") is None
    assert tool_event_type("lighthouse-create-dataset") == UsageEventType.DATASET_CREATE
    assert tool_event_type("lighthouse-list-files") == UsageEventType.API_CALL


@pytest.mark.asyncio
async def test_viewer_cannot_upload(store: TenantStore, settings: Settings, resolver: TenantResolver) -> None:
    await seed_organization(store, settings)
    await seed_member(store, settings, user_id="viewer-1", role=Role.VIEWER)
    issued = await issue_key(store, settings, created_by="viewer-1")
    gate, _ = _gate(store, settings, resolver)

    decision = await gate.authorize(issued.raw_key, "lighthouse-upload", amount=10)
    assert decision.allowed is False
    assert decision.error_code == TenantErrorCode.PERMISSION_DENIED
    assert decision.missing_permissions == [Permission.FILE_UPLOAD]

    download = await gate.authorize(issued.raw_key, "lighthouse-download", amount=10)
    assert download.allowed is True


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_key_are_denied(
    store: TenantStore, settings: Settings, resolver: TenantResolver
) -> None:
    await seed_organization(store, settings)
    issued = await issue_key(store, settings)
    gate, _ = _gate(store, settings, resolver)

    unknown = await gate.authorize(issued.raw_key, "lighthouse-format-disk")
    assert unknown.allowed is False
    assert unknown.error_code == TenantErrorCode.PERMISSION_DENIED

    bad = await gate.authorize("not-a-key", "lighthouse-upload")
    assert bad.allowed is False
    assert bad.context is None
    assert bad.error_code == TenantErrorCode.INVALID_KEY_FORMAT


@pytest.mark.asyncio
async def test_upload_over_storage_limit_is_denied(
    store: TenantStore, settings: Settings, resolver: TenantResolver
) -> None:
    limited = settings.model_copy(update={"quota_storage_limit": 1000})
    await seed_organization(store, limited)
    issued = await issue_key(store, limited)
    gate, _ = _gate(store, limited, resolver)

    decision = await gate.authorize(issued.raw_key, "lighthouse-upload", amount=5000)
    assert decision.allowed is False
    assert decision.error_code == TenantErrorCode.QUOTA_EXCEEDED
    assert decision.context is not None


@pytest.mark.asyncio
async def test_completed_upload_is_charged_and_tracked(
    store: TenantStore, settings: Settings, resolver: TenantResolver
) -> None:
    await seed_organization(store, settings)
    issued = await issue_key(store, settings)
    gate, tracker = _gate(store, settings, resolver)

    decision = await gate.authorize(issued.raw_key, "lighthouse-upload", amount=100)
    assert decision.allowed is True
    assert decision.context is not None

    quota = await gate.complete(
        decision.context,
        "lighthouse-upload",
        success=True,
        bytes_transferred=100,
        duration_ms=12.5,
        resource_id="file-1",
    )
    assert quota.storage_used == 100
    assert quota.requests_used == 1

    assert await tracker.flush() == 1
    entries = await store.get_audit_logs("acme")
    uploads = [entry for entry in entries if entry.action == "file_upload"]
    assert len(uploads) == 1
    assert uploads[0].resource_id == "file-1"
    assert uploads[0].result == "success"


@pytest.mark.asyncio
async def test_failed_download_costs_a_request_but_no_bandwidth(
    store: TenantStore, settings: Settings, resolver: TenantResolver
) -> None:
    await seed_organization(store, settings)
    issued = await issue_key(store, settings)
    gate, _ = _gate(store, settings, resolver)

    decision = await gate.authorize(issued.raw_key, "lighthouse-download", amount=50)
    assert decision.context is not None
    quota = await gate.complete(decision.context, "lighthouse-download", success=False, bytes_transferred=50)
    assert quota.bandwidth_used == 0
    assert quota.requests_used == 1
