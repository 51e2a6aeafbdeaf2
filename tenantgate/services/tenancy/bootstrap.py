from __future__ import annotations

import logging

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    TenantErrorCode,
)
from tenantgate.domain.models import (
    Organization,
    OrganizationExtensions,
    OrganizationSettings,
    Permission,
    QuotaOverrides,
    Role,
    Team,
    TeamMember,
    utc_now,
)
from tenantgate.persistence.store import TenantStore
from tenantgate.services.audit import record_event
from tenantgate.services.auth.api_keys import is_safe_id
from tenantgate.services.quota import build_default_quota, ensure_quota
from tenantgate.services.tenancy.resolver import TenantResolver


logger = logging.getLogger(__name__)

SYSTEM_USER_ID = "system"
SYSTEM_USER_EMAIL = "system@tenantgate.local"
SYSTEM_USER_DISPLAY_NAME = "System Administrator"


def validate_tenant_id(value: str, *, kind: str) -> str:
    # Ids are embedded in API keys and used as path segments; the resolver accepts the same set.
    if not is_safe_id(value):
        raise ValueError(f"Invalid {kind} id: {value!r}")
    return value


def build_organization_settings(
    settings: Settings,
    *,
    default_storage_quota: int | None = None,
) -> OrganizationSettings:
    return OrganizationSettings(
        default_storage_quota=(
            default_storage_quota if default_storage_quota is not None else settings.quota_storage_limit
        ),
        default_rate_limit=settings.org_default_rate_limit,
        allow_team_creation=settings.org_allow_team_creation,
        require_2fa=settings.org_require_2fa,
        data_retention_days=settings.org_data_retention_days,
        max_file_size=settings.org_max_file_size,
        enable_audit_log=settings.org_enable_audit_log,
    )


def _owner_member(user_id: str, email: str, display_name: str) -> TeamMember:
    return TeamMember(
        user_id=user_id,
        email=email,
        display_name=display_name,
        role=Role.OWNER,
        joined_at=utc_now(),
        status="active",
    )


async def create_organization(
    store: TenantStore,
    *,
    organization_id: str,
    owner_id: str,
    owner_email: str,
    owner_display_name: str,
    display_name: str | None = None,
    description: str | None = None,
    organization_settings: OrganizationSettings | None = None,
    settings: Settings | None = None,
) -> Organization:
    """Create an organization with its quota and an owner team.

    Users only exist as team members, so the owner is seated in a team named
    after ``settings.default_team_id`` to make org-scoped keys resolvable.
    """
    settings = settings or get_settings()
    validate_tenant_id(organization_id, kind="organization")
    if await store.get_organization(organization_id) is not None:
        raise ConflictError(f"Organization already exists: {organization_id}")

    now = utc_now()
    organization = Organization(
        id=organization_id,
        name=organization_id,
        display_name=display_name or organization_id,
        description=description,
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        settings=organization_settings or build_organization_settings(settings),
        status="active",
        extensions=OrganizationExtensions(created_by=owner_id),
    )
    await store.save_organization(organization)

    team = Team(
        id=settings.default_team_id,
        organization_id=organization_id,
        name=settings.default_team_id,
        display_name="Default Team",
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        members=[_owner_member(owner_id, owner_email, owner_display_name)],
        is_default=True,
    )
    await store.save_team(organization_id, team)

    quota = build_default_quota(settings, organization=organization, now=now)
    quota.current_teams = 1
    await store.save_quota(organization_id, quota)

    await record_event(
        store,
        organization_id=organization_id,
        user_id=owner_id,
        action="org.created",
        resource="organization",
        resource_id=organization_id,
    )
    logger.info("organization_created organization_id=%s owner_id=%s", organization_id, owner_id)
    return organization


async def create_team(
    store: TenantStore,
    *,
    organization_id: str,
    team_id: str,
    owner_id: str,
    owner_email: str,
    owner_display_name: str,
    display_name: str | None = None,
    description: str | None = None,
    quota_overrides: QuotaOverrides | None = None,
    settings: Settings | None = None,
) -> Team:
    settings = settings or get_settings()
    validate_tenant_id(team_id, kind="team")
    organization = await store.get_organization(organization_id)
    if organization is None or organization.status == "deleted":
        raise NotFoundError(
            f"Organization not found: {organization_id}", TenantErrorCode.ORGANIZATION_NOT_FOUND
        )
    if not organization.settings.allow_team_creation:
        raise PermissionDeniedError(
            f"Team creation is disabled for organization {organization_id}",
            [Permission.TEAM_CREATE],
        )
    async with store.quota_lock(organization_id):
        if await store.get_team(organization_id, team_id) is not None:
            raise ConflictError(f"Team already exists: {team_id}")
        quota = await ensure_quota(store, organization, settings=settings)
        if quota.current_teams >= quota.max_teams:
            raise QuotaExceededError(f"Maximum teams reached ({quota.max_teams})")

        now = utc_now()
        team = Team(
            id=team_id,
            organization_id=organization_id,
            name=team_id,
            display_name=display_name or team_id,
            description=description,
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            members=[_owner_member(owner_id, owner_email, owner_display_name)],
            quota_overrides=quota_overrides,
        )
        await store.save_team(organization_id, team)
        quota.current_teams += 1
        await store.save_quota(organization_id, quota)

    await record_event(
        store,
        organization_id=organization_id,
        team_id=team_id,
        user_id=owner_id,
        action="team.created",
        resource="team",
        resource_id=team_id,
    )
    logger.info("team_created organization_id=%s team_id=%s", organization_id, team_id)
    return team


async def add_team_member(
    store: TenantStore,
    *,
    organization_id: str,
    team_id: str,
    user_id: str,
    email: str,
    display_name: str,
    role: Role = Role.MEMBER,
    actor_id: str = SYSTEM_USER_ID,
    settings: Settings | None = None,
) -> TeamMember:
    # Idempotent per user_id: an existing member is returned unchanged.
    team = await store.get_team(organization_id, team_id)
    if team is None:
        raise NotFoundError(f"Team not found: {team_id}", TenantErrorCode.TEAM_NOT_FOUND)
    existing = team.find_member(user_id)
    if existing is not None:
        logger.info("team_member_exists organization_id=%s team_id=%s user_id=%s", organization_id, team_id, user_id)
        return existing

    max_members = await _max_members(store, organization_id, team, settings or get_settings())
    if len(team.members) >= max_members:
        raise QuotaExceededError(f"Maximum members per team reached ({max_members})")

    member = TeamMember(
        user_id=user_id,
        email=email,
        display_name=display_name,
        role=role,
        joined_at=utc_now(),
        status="active",
    )
    team.members.append(member)
    team.updated_at = utc_now()
    await store.save_team(organization_id, team)

    await record_event(
        store,
        organization_id=organization_id,
        team_id=team_id,
        user_id=actor_id,
        action="team.member_added",
        resource="team_member",
        resource_id=user_id,
        metadata={"role": role.value},
    )
    logger.info(
        "team_member_added organization_id=%s team_id=%s user_id=%s role=%s",
        organization_id,
        team_id,
        user_id,
        role.value,
    )
    return member


async def _max_members(store: TenantStore, organization_id: str, team: Team, settings: Settings) -> int:
    quota = await store.get_quota(organization_id, team.id)
    if quota is None:
        quota = await store.get_quota(organization_id)
    if quota is not None:
        return quota.max_members_per_team
    if team.quota_overrides is not None and team.quota_overrides.max_members_per_team is not None:
        return team.quota_overrides.max_members_per_team
    return settings.quota_max_members_per_team


class DefaultOrganizationInitializer:
    """Create the default organization that legacy single-tenant keys resolve into."""

    def __init__(
        self,
        store: TenantStore,
        *,
        settings: Settings | None = None,
        resolver: TenantResolver | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._resolver = resolver or TenantResolver(store, settings=self._settings)

    @property
    def organization_id(self) -> str:
        return self._settings.default_organization_id

    async def initialize(
        self,
        *,
        legacy_api_key: str | None = None,
        organization_settings: OrganizationSettings | None = None,
    ) -> None:
        organization_id = self.organization_id
        legacy_api_key = legacy_api_key or self._settings.legacy_api_key
        existing = await self._store.get_organization(organization_id)
        if existing is not None:
            logger.info("default_organization_exists organization_id=%s", organization_id)
        else:
            await self._create_default_organization(organization_settings)

        if legacy_api_key:
            await self._resolver.migrate_legacy_key(legacy_api_key, SYSTEM_USER_ID)

    async def ensure_default_organization(self) -> Organization:
        await self.initialize()
        organization = await self._store.get_organization(self.organization_id)
        if organization is None:
            raise NotFoundError(
                f"Failed to initialize default organization: {self.organization_id}",
                TenantErrorCode.ORGANIZATION_NOT_FOUND,
            )
        return organization

    async def add_user_to_default_org(
        self,
        user_id: str,
        email: str,
        display_name: str,
        role: Role = Role.MEMBER,
    ) -> TeamMember:
        return await add_team_member(
            self._store,
            organization_id=self.organization_id,
            team_id=self._settings.default_team_id,
            user_id=user_id,
            email=email,
            display_name=display_name,
            role=role,
            settings=self._settings,
        )

    async def _create_default_organization(self, organization_settings: OrganizationSettings | None) -> None:
        organization_id = self.organization_id
        team_id = self._settings.default_team_id
        now = utc_now()
        organization = Organization(
            id=organization_id,
            name=organization_id,
            display_name="Default Organization",
            description="Default organization for single-tenant mode",
            created_at=now,
            updated_at=now,
            owner_id=SYSTEM_USER_ID,
            settings=organization_settings or build_organization_settings(self._settings),
            status="active",
            extensions=OrganizationExtensions(is_default=True, created_by=SYSTEM_USER_ID),
        )
        await self._store.save_organization(organization)

        team = Team(
            id=team_id,
            organization_id=organization_id,
            name=team_id,
            display_name="Default Team",
            description="Default team for all users",
            created_at=now,
            updated_at=now,
            owner_id=SYSTEM_USER_ID,
            members=[_owner_member(SYSTEM_USER_ID, SYSTEM_USER_EMAIL, SYSTEM_USER_DISPLAY_NAME)],
            is_default=True,
        )
        await self._store.save_team(organization_id, team)

        quota = build_default_quota(self._settings, organization=organization, now=now)
        quota.current_teams = 1
        await self._store.save_quota(organization_id, quota)
        logger.info("default_organization_initialized organization_id=%s", organization_id)
