from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest

from tenantgate.core.config import Settings
from tenantgate.persistence.store import TenantStore
from tenantgate.services.tenancy.resolver import TenantResolver


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    # Ignore any local .env so tests see documented defaults.
    return Settings(_env_file=None, tenant_root=str(tmp_path / "tenants"))


@pytest.fixture
async def store(settings: Settings) -> TenantStore:
    tenant_store = TenantStore(settings.tenant_root)
    await tenant_store.initialize()
    return tenant_store


@pytest.fixture
async def resolver(store: TenantStore, settings: Settings) -> AsyncIterator[TenantResolver]:
    tenant_resolver = TenantResolver(store, settings=settings)
    yield tenant_resolver
    # Drain key touches before tmp_path is torn down.
    await tenant_resolver.wait_for_background_tasks()
