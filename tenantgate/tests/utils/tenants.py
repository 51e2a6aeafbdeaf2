from __future__ import annotations

from datetime import datetime, timedelta

from tenantgate.core.config import Settings
from tenantgate.domain.models import (
    ROLE_PERMISSIONS,
    Organization,
    OrganizationSettings,
    Permission,
    Role,
    Team,
    TeamMember,
    TenantApiKey,
    TenantContext,
    UsageQuota,
    utc_now,
)
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import IssuedApiKey, issue_api_key
from tenantgate.services.tenancy.bootstrap import add_team_member, create_organization


OWNER_ID = "owner-1"


def make_member(role: Role = Role.MEMBER, user_id: str | None = None) -> TeamMember:
    # Build an in-memory member for pure RBAC checks.
    resolved_id = user_id or f"{role.value}-user"
    return TeamMember(
        user_id=resolved_id,
        email=f"{resolved_id}@example.com",
        display_name=resolved_id,
        role=role,
    )


def make_quota(**overrides: object) -> UsageQuota:
    values: dict[str, object] = {
        "storage_limit": 1000,
        "request_limit": 100,
        "bandwidth_limit": 1000,
        "max_teams": 10,
        "max_members_per_team": 50,
        "max_api_keys": 100,
        "reset_date": utc_now() + timedelta(days=30),
    }
    values.update(overrides)
    return UsageQuota(**values)


def make_context(
    *,
    organization_id: str = "acme",
    team_id: str | None = None,
    role: Role = Role.MEMBER,
    permissions: list[Permission] | None = None,
    quota: UsageQuota | None = None,
    user_id: str | None = None,
) -> TenantContext:
    # Assemble a resolved context without touching the store.
    member = make_member(role, user_id)
    organization = Organization(
        id=organization_id,
        name=organization_id,
        display_name=organization_id,
        owner_id=OWNER_ID,
        settings=OrganizationSettings(default_storage_quota=1000),
    )
    team = None
    if team_id is not None:
        team = Team(
            id=team_id,
            organization_id=organization_id,
            name=team_id,
            display_name=team_id,
            owner_id=OWNER_ID,
            members=[member],
        )
    api_key = TenantApiKey(
        id="key1",
        organization_id=organization_id,
        team_id=team_id,
        created_by=member.user_id,
        name="test-key",
        key="masked",
        key_hash="0" * 64,
    )
    return TenantContext(
        organization=organization,
        team=team,
        user=member,
        api_key=api_key,
        permissions=list(permissions if permissions is not None else ROLE_PERMISSIONS[role]),
        quota=quota or make_quota(),
    )


async def seed_organization(
    store: TenantStore,
    settings: Settings,
    *,
    organization_id: str = "acme",
) -> Organization:
    # Provision an organization whose default team is owned by OWNER_ID.
    return await create_organization(
        store,
        organization_id=organization_id,
        owner_id=OWNER_ID,
        owner_email=f"{OWNER_ID}@example.com",
        owner_display_name="Owner One",
        settings=settings,
    )


async def seed_member(
    store: TenantStore,
    settings: Settings,
    *,
    user_id: str,
    role: Role,
    organization_id: str = "acme",
    team_id: str = "default",
) -> TeamMember:
    return await add_team_member(
        store,
        organization_id=organization_id,
        team_id=team_id,
        user_id=user_id,
        email=f"{user_id}@example.com",
        display_name=user_id,
        role=role,
        settings=settings,
    )


async def issue_key(
    store: TenantStore,
    settings: Settings,
    *,
    created_by: str = OWNER_ID,
    organization_id: str = "acme",
    team_id: str | None = None,
    permissions: list[Permission] | None = None,
    expires_at: datetime | None = None,
) -> IssuedApiKey:
    return await issue_api_key(
        store,
        organization_id=organization_id,
        team_id=team_id,
        created_by=created_by,
        name="test-key",
        permissions=permissions,
        expires_at=expires_at,
        settings=settings,
    )
