from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    # Keep every persisted timestamp timezone-aware UTC.
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive values are read as UTC so comparisons against utc_now() never mix kinds.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


# Single total order over roles; every rank comparison goes through compare_roles.
ROLE_ORDER: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.MEMBER: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}


def role_rank(role: Role) -> int:
    return ROLE_ORDER[Role(role)]


def compare_roles(left: Role, right: Role) -> int:
    # Return <0, 0 or >0 like a classic comparator.
    return role_rank(left) - role_rank(right)


class Permission(str, Enum):
    FILE_UPLOAD = "file:upload"
    FILE_DOWNLOAD = "file:download"
    FILE_DELETE = "file:delete"
    FILE_LIST = "file:list"
    FILE_SHARE = "file:share"

    DATASET_CREATE = "dataset:create"
    DATASET_READ = "dataset:read"
    DATASET_UPDATE = "dataset:update"
    DATASET_DELETE = "dataset:delete"
    DATASET_LIST = "dataset:list"

    TEAM_CREATE = "team:create"
    TEAM_READ = "team:read"
    TEAM_UPDATE = "team:update"
    TEAM_DELETE = "team:delete"
    TEAM_MANAGE_MEMBERS = "team:manage_members"

    API_KEY_CREATE = "api_key:create"
    API_KEY_READ = "api_key:read"
    API_KEY_REVOKE = "api_key:revoke"
    API_KEY_LIST = "api_key:list"

    ORG_UPDATE = "org:update"
    ORG_DELETE = "org:delete"
    ORG_MANAGE_BILLING = "org:manage_billing"
    ORG_VIEW_USAGE = "org:view_usage"

    QUOTA_VIEW = "quota:view"
    QUOTA_UPDATE = "quota:update"


# OWNER ⊇ ADMIN ⊇ MEMBER ⊇ VIEWER must hold when editing this table.
ROLE_PERMISSIONS: dict[Role, tuple[Permission, ...]] = {
    Role.OWNER: tuple(Permission),
    Role.ADMIN: (
        Permission.FILE_UPLOAD,
        Permission.FILE_DOWNLOAD,
        Permission.FILE_DELETE,
        Permission.FILE_LIST,
        Permission.FILE_SHARE,
        Permission.DATASET_CREATE,
        Permission.DATASET_READ,
        Permission.DATASET_UPDATE,
        Permission.DATASET_DELETE,
        Permission.DATASET_LIST,
        Permission.TEAM_READ,
        Permission.TEAM_UPDATE,
        Permission.TEAM_MANAGE_MEMBERS,
        Permission.API_KEY_CREATE,
        Permission.API_KEY_READ,
        Permission.API_KEY_REVOKE,
        Permission.API_KEY_LIST,
        Permission.ORG_VIEW_USAGE,
        Permission.QUOTA_VIEW,
    ),
    Role.MEMBER: (
        Permission.FILE_UPLOAD,
        Permission.FILE_DOWNLOAD,
        Permission.FILE_LIST,
        Permission.DATASET_CREATE,
        Permission.DATASET_READ,
        Permission.DATASET_UPDATE,
        Permission.DATASET_LIST,
        Permission.TEAM_READ,
        Permission.API_KEY_READ,
        Permission.API_KEY_LIST,
        Permission.QUOTA_VIEW,
    ),
    Role.VIEWER: (
        Permission.FILE_DOWNLOAD,
        Permission.FILE_LIST,
        Permission.DATASET_READ,
        Permission.DATASET_LIST,
        Permission.TEAM_READ,
        Permission.QUOTA_VIEW,
    ),
}


EntityStatus = Literal["active", "suspended", "deleted"]
MemberStatus = Literal["active", "invited", "suspended"]
ApiKeyStatus = Literal["active", "revoked", "expired"]
AuditResult = Literal["success", "failure"]


class OrganizationSettings(BaseModel):
    # Storage, rate, file-size and retention policy for an organization.
    default_storage_quota: int
    default_rate_limit: int = 60
    allow_team_creation: bool = True
    require_2fa: bool = False
    data_retention_days: int = 0
    allowed_file_types: list[str] = Field(default_factory=list)
    max_file_size: int = 100 * 1024 * 1024
    enable_audit_log: bool = True
    custom_domain: str | None = None


class OrganizationExtensions(BaseModel):
    # Documented extension point; unknown keys are kept so newer writers round-trip.
    model_config = ConfigDict(extra="allow")

    is_default: bool = False
    created_by: str | None = None


class Organization(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime = Field(default_factory=utc_now)
    owner_id: str
    settings: OrganizationSettings
    status: EntityStatus = "active"
    extensions: OrganizationExtensions = Field(default_factory=OrganizationExtensions)


class TeamMember(BaseModel):
    user_id: str
    email: str
    display_name: str
    role: Role
    joined_at: UtcDatetime = Field(default_factory=utc_now)
    last_active_at: UtcDatetime | None = None
    status: MemberStatus = "active"


class QuotaOverrides(BaseModel):
    # Team-level limit overrides applied when a team quota is seeded.
    storage_limit: int | None = None
    request_limit: int | None = None
    bandwidth_limit: int | None = None
    max_members_per_team: int | None = None
    max_api_keys: int | None = None


class Team(BaseModel):
    id: str
    organization_id: str
    name: str
    display_name: str
    description: str | None = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime = Field(default_factory=utc_now)
    owner_id: str
    members: list[TeamMember] = Field(default_factory=list)
    quota_overrides: QuotaOverrides | None = None
    status: EntityStatus = "active"
    is_default: bool = False

    def find_member(self, user_id: str) -> TeamMember | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


class ApiKeyUsageStats(BaseModel):
    total_requests: int = 0
    failed_requests: int = 0
    last_request_at: UtcDatetime | None = None
    rate_limit_hits: int = 0
    bytes_uploaded: int = 0
    bytes_downloaded: int = 0


class TenantApiKey(BaseModel):
    id: str
    organization_id: str
    team_id: str | None = None
    created_by: str
    name: str
    # Formatted key string; masked when plaintext persistence is disabled.
    key: str
    # sha256 of the secret component only.
    key_hash: str
    created_at: UtcDatetime = Field(default_factory=utc_now)
    expires_at: UtcDatetime | None = None
    last_used_at: UtcDatetime | None = None
    status: ApiKeyStatus = "active"
    permissions: list[Permission] = Field(default_factory=list)
    usage_stats: ApiKeyUsageStats | None = None
    migrated: bool = False
    migrated_at: UtcDatetime | None = None


class UsageQuota(BaseModel):
    storage_limit: int
    storage_used: int = 0
    request_limit: int
    requests_used: int = 0
    bandwidth_limit: int
    bandwidth_used: int = 0
    max_teams: int
    current_teams: int = 0
    max_members_per_team: int
    max_api_keys: int
    current_api_keys: int = 0
    reset_date: UtcDatetime


class TenantAuditLog(BaseModel):
    id: str
    organization_id: str
    team_id: str | None = None
    user_id: str
    action: str
    resource: str
    resource_id: str = ""
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    ip_address: str | None = None
    user_agent: str | None = None
    result: AuditResult
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TenantContext(BaseModel):
    # Resolved identity handed to downstream operations; never persisted.
    organization: Organization
    team: Team | None = None
    user: TeamMember
    api_key: TenantApiKey
    permissions: list[Permission]
    quota: UsageQuota
