from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hashlib
import logging
import re
import secrets
from typing import Iterable
from uuid import uuid4

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import NotFoundError, QuotaExceededError, TenantErrorCode
from tenantgate.domain.models import (
    ApiKeyStatus,
    ApiKeyUsageStats,
    Permission,
    Role,
    TenantApiKey,
    UsageQuota,
    compare_roles,
    utc_now,
)
from tenantgate.persistence.store import TenantStore
from tenantgate.services.audit import record_event
from tenantgate.services.quota import ensure_quota


logger = logging.getLogger(__name__)

_LEGACY_KEY_ID_LENGTH = 16
_MASK_VISIBLE_CHARS = 12
# Organization, team and key ids: no grammar separators, no path syntax.
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


def normalize_role(role: str | Role) -> Role:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    if isinstance(role, Role):
        return role
    normalized = role.strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def role_allows(*, role: Role, minimum_role: Role) -> bool:
    return compare_roles(role, minimum_role) >= 0


def hash_api_key(secret: str) -> str:
    # Use SHA-256 for deterministic, non-reversible secret storage.
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def legacy_key_id(raw_key: str) -> str:
    # Legacy keys carry no id; derive a stable one from the whole key.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()[:_LEGACY_KEY_ID_LENGTH]


def is_safe_id(value: str) -> bool:
    return bool(value) and _SAFE_ID_PATTERN.match(value) is not None


def format_api_key(
    *,
    organization_id: str,
    key_id: str,
    secret: str,
    team_id: str | None = None,
) -> str:
    # Ids must survive the parse grammar and the resolver's id check.
    if not is_safe_id(organization_id) or (team_id is not None and not is_safe_id(team_id)):
        raise ValueError("Organization and team ids may only contain letters, digits and '-'")
    if not is_safe_id(key_id):
        raise ValueError("Key ids may only contain letters, digits and '-'")
    if team_id:
        return f"org_{organization_id}_team_{team_id}_key_{key_id}.{secret}"
    return f"org_{organization_id}_key_{key_id}.{secret}"


def mask_api_key(raw_key: str) -> str:
    return f"{raw_key[:_MASK_VISIBLE_CHARS]}..."


def generate_api_key(
    *,
    organization_id: str,
    team_id: str | None = None,
    key_id: str | None = None,
) -> tuple[str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = format_api_key(
        organization_id=organization_id,
        team_id=team_id,
        key_id=resolved_id,
        secret=secret,
    )
    return resolved_id, raw_key, hash_api_key(secret)


@dataclass(frozen=True)
class IssuedApiKey:
    # raw_key is only ever returned here; show it once.
    api_key: TenantApiKey
    raw_key: str


async def issue_api_key(
    store: TenantStore,
    *,
    organization_id: str,
    created_by: str,
    name: str,
    team_id: str | None = None,
    permissions: Iterable[Permission] | None = None,
    expires_at: datetime | None = None,
    settings: Settings | None = None,
) -> IssuedApiKey:
    settings = settings or get_settings()
    organization = await store.get_organization(organization_id)
    if organization is None:
        raise NotFoundError(
            f"Organization not found: {organization_id}", TenantErrorCode.ORGANIZATION_NOT_FOUND
        )
    if team_id is not None and await store.get_team(organization_id, team_id) is None:
        raise NotFoundError(f"Team not found: {team_id}", TenantErrorCode.TEAM_NOT_FOUND)
    if not await _is_member(store, organization_id, created_by, team_id):
        raise NotFoundError(f"User not found: {created_by}", TenantErrorCode.USER_NOT_FOUND)

    async with store.quota_lock(organization_id):
        quota = await ensure_quota(store, organization, settings=settings)
        if quota.current_api_keys >= quota.max_api_keys:
            raise QuotaExceededError(f"Maximum API keys reached ({quota.max_api_keys})")

        key_id, raw_key, key_hash = generate_api_key(organization_id=organization_id, team_id=team_id)
        api_key = TenantApiKey(
            id=key_id,
            organization_id=organization_id,
            team_id=team_id,
            created_by=created_by,
            name=name,
            key=raw_key if settings.persist_plaintext_keys else mask_api_key(raw_key),
            key_hash=key_hash,
            created_at=utc_now(),
            expires_at=expires_at,
            status="active",
            permissions=list(permissions or []),
            usage_stats=ApiKeyUsageStats(),
        )
        await store.save_api_key(organization_id, api_key)
        quota.current_api_keys += 1
        await store.save_quota(organization_id, quota)

    await record_event(
        store,
        organization_id=organization_id,
        team_id=team_id,
        user_id=created_by,
        action="auth.api_key.created",
        resource="api_key",
        resource_id=key_id,
        metadata={"key_name": name, "custom_permissions": [p.value for p in api_key.permissions]},
    )
    logger.info("api_key_issued organization_id=%s key_id=%s", organization_id, key_id)
    return IssuedApiKey(api_key=api_key, raw_key=raw_key)


async def revoke_api_key(
    store: TenantStore,
    *,
    organization_id: str,
    key_id: str,
    actor_id: str = "system",
) -> TenantApiKey:
    # Revocation is terminal; the document is kept for audits.
    existing = await store.get_api_key(organization_id, key_id)
    if existing is None:
        raise NotFoundError(f"API key not found: {key_id}", TenantErrorCode.API_KEY_NOT_FOUND)
    was_active = existing.status == "active"
    api_key = await store.update_api_key_status(organization_id, key_id, "revoked")

    if was_active and await store.get_quota(organization_id) is not None:
        await store.update_quota(organization_id, _release_key_slot)

    await record_event(
        store,
        organization_id=organization_id,
        team_id=api_key.team_id,
        user_id=actor_id,
        action="auth.api_key.revoked",
        resource="api_key",
        resource_id=key_id,
        metadata={"key_name": api_key.name, "created_by": api_key.created_by},
    )
    logger.info("api_key_revoked organization_id=%s key_id=%s", organization_id, key_id)
    return api_key


async def list_api_keys(
    store: TenantStore,
    *,
    organization_id: str,
    team_id: str | None = None,
    status: ApiKeyStatus | None = None,
) -> list[TenantApiKey]:
    keys = await store.list_api_keys(organization_id)
    if team_id is not None:
        keys = [key for key in keys if key.team_id == team_id]
    if status is not None:
        keys = [key for key in keys if key.status == status]
    return keys


def _release_key_slot(quota: UsageQuota) -> None:
    quota.current_api_keys = max(quota.current_api_keys - 1, 0)


async def _is_member(store: TenantStore, organization_id: str, user_id: str, team_id: str | None) -> bool:
    if team_id is not None:
        team = await store.get_team(organization_id, team_id)
        return team is not None and team.find_member(user_id) is not None
    for team in await store.list_teams(organization_id):
        if team.find_member(user_id) is not None:
            return True
    return False
