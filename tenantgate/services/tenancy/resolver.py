from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hmac
import logging
import re

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import ApiKeyStateError, TenantErrorCode
from tenantgate.domain.models import (
    ROLE_PERMISSIONS,
    ApiKeyUsageStats,
    Organization,
    Team,
    TeamMember,
    TenantApiKey,
    TenantContext,
    utc_now,
)
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import hash_api_key, is_safe_id, legacy_key_id
from tenantgate.services.quota import ensure_quota


logger = logging.getLogger(__name__)

_TEAM_KEY_PATTERN = re.compile(r"^org_(?P<org>[^_]+)_team_(?P<team>[^_]+)_key_(?P<key>[^.]+)\.(?P<secret>.+)$")
_ORG_KEY_PATTERN = re.compile(r"^org_(?P<org>[^_]+)_key_(?P<key>[^.]+)\.(?P<secret>.+)$")
_LEGACY_KEY_PATTERN = re.compile(r"^[0-9a-f]{8}\.[0-9a-f]{32}$")


@dataclass(frozen=True)
class ParsedApiKey:
    organization_id: str
    key_id: str
    secret: str
    is_legacy: bool
    team_id: str | None = None


@dataclass(frozen=True)
class TenantResolutionResult:
    success: bool
    context: TenantContext | None = None
    error: str | None = None
    error_code: TenantErrorCode | None = None


def _failure(code: TenantErrorCode, message: str) -> TenantResolutionResult:
    return TenantResolutionResult(success=False, error=message, error_code=code)


class TenantResolver:
    """Turn a raw API key into a resolved :class:`TenantContext`.

    Expected failures come back as a :class:`TenantResolutionResult` with an
    error code; only store I/O failures raise. Successful resolutions schedule
    a usage touch on the key without awaiting it.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        settings: Settings | None = None,
        default_organization_id: str | None = None,
        strict_isolation: bool | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._default_organization_id = default_organization_id or self._settings.default_organization_id
        self._strict_isolation = (
            self._settings.strict_isolation if strict_isolation is None else strict_isolation
        )
        self._background_tasks: set[asyncio.Task[None]] = set()

    def parse_api_key(self, raw_key: str) -> ParsedApiKey | None:
        # First matching grammar wins; team-scoped is tried before org-scoped.
        # Ids outside the safe set (path syntax, dots) make the whole key invalid.
        raw_key = raw_key.strip()
        match = _TEAM_KEY_PATTERN.match(raw_key)
        if match:
            if not all(is_safe_id(match.group(name)) for name in ("org", "team", "key")):
                return None
            return ParsedApiKey(
                organization_id=match.group("org"),
                team_id=match.group("team"),
                key_id=match.group("key"),
                secret=match.group("secret"),
                is_legacy=False,
            )
        match = _ORG_KEY_PATTERN.match(raw_key)
        if match:
            if not all(is_safe_id(match.group(name)) for name in ("org", "key")):
                return None
            return ParsedApiKey(
                organization_id=match.group("org"),
                key_id=match.group("key"),
                secret=match.group("secret"),
                is_legacy=False,
            )
        if _LEGACY_KEY_PATTERN.match(raw_key):
            return ParsedApiKey(
                organization_id=self._default_organization_id,
                key_id=legacy_key_id(raw_key),
                secret=raw_key,
                is_legacy=True,
            )
        return None

    async def resolve_tenant(self, raw_key: str, *, team_id: str | None = None) -> TenantResolutionResult:
        parsed = self.parse_api_key(raw_key or "")
        if parsed is None:
            return _failure(TenantErrorCode.INVALID_KEY_FORMAT, "Invalid API key format")

        organization = await self._store.get_organization(parsed.organization_id)
        if organization is None or organization.status == "deleted":
            return _failure(
                TenantErrorCode.ORGANIZATION_NOT_FOUND,
                f"Organization not found: {parsed.organization_id}",
            )
        if organization.status == "suspended":
            return _failure(TenantErrorCode.ORGANIZATION_SUSPENDED, "Organization is suspended")

        team: Team | None = None
        if parsed.team_id is not None:
            team = await self._store.get_team(organization.id, parsed.team_id)
            if team is None or team.status == "deleted":
                return _failure(TenantErrorCode.TEAM_NOT_FOUND, f"Team not found: {parsed.team_id}")
            if team.status == "suspended":
                return _failure(TenantErrorCode.TEAM_SUSPENDED, "Team is suspended")

        api_key = await self._store.get_api_key(organization.id, parsed.key_id)
        if api_key is None or not self._verify_key(api_key, parsed):
            return _failure(TenantErrorCode.API_KEY_NOT_FOUND, "API key not found")
        if api_key.status == "revoked":
            return _failure(TenantErrorCode.API_KEY_REVOKED, "API key has been revoked")
        if api_key.status == "expired":
            return _failure(TenantErrorCode.API_KEY_EXPIRED, "API key has expired")
        if api_key.expires_at is not None and api_key.expires_at <= utc_now():
            try:
                await self._store.update_api_key_status(organization.id, api_key.id, "expired")
            except ApiKeyStateError:
                # Revoked concurrently; either terminal status denies the key.
                return _failure(TenantErrorCode.API_KEY_REVOKED, "API key has been revoked")
            logger.info("api_key_expired organization_id=%s key_id=%s", organization.id, api_key.id)
            return _failure(TenantErrorCode.API_KEY_EXPIRED, "API key has expired")

        isolation_error = self._check_isolation(api_key, team_id)
        if isolation_error is not None:
            return isolation_error
        if team is None and team_id is not None:
            # Org-scoped keys operate inside the requested team when it exists.
            if not is_safe_id(team_id):
                return _failure(TenantErrorCode.TEAM_NOT_FOUND, f"Team not found: {team_id}")
            team = await self._store.get_team(organization.id, team_id)
            if team is None or team.status == "deleted":
                return _failure(TenantErrorCode.TEAM_NOT_FOUND, f"Team not found: {team_id}")
            if team.status == "suspended":
                return _failure(TenantErrorCode.TEAM_SUSPENDED, "Team is suspended")

        user = await self._find_user(organization, api_key)
        if user is None:
            return _failure(TenantErrorCode.USER_NOT_FOUND, f"User not found: {api_key.created_by}")
        if user.status == "suspended":
            return _failure(TenantErrorCode.USER_SUSPENDED, "User is suspended")

        # A non-empty custom list fully replaces the role's permissions.
        permissions = list(api_key.permissions) if api_key.permissions else list(ROLE_PERMISSIONS[user.role])

        quota_team = team if api_key.team_id is not None else None
        async with self._store.quota_lock(organization.id, quota_team.id if quota_team else None):
            quota = await ensure_quota(self._store, organization, team=quota_team, settings=self._settings)

        context = TenantContext(
            organization=organization,
            team=team,
            user=user,
            api_key=api_key,
            permissions=permissions,
            quota=quota,
        )
        self._schedule_touch(organization.id, api_key.id)
        return TenantResolutionResult(success=True, context=context)

    async def migrate_legacy_key(self, raw_key: str, user_id: str = "system") -> TenantApiKey:
        # Idempotent: re-migrating the same raw key returns the stored document.
        raw_key = raw_key.strip()
        if not raw_key:
            raise ValueError("Legacy API key must not be empty")
        if not _LEGACY_KEY_PATTERN.match(raw_key):
            logger.warning("legacy_api_key_unresolvable key_id=%s", legacy_key_id(raw_key))
        key_id = legacy_key_id(raw_key)
        existing = await self._store.get_api_key(self._default_organization_id, key_id)
        if existing is not None:
            return existing

        now = utc_now()
        api_key = TenantApiKey(
            id=key_id,
            organization_id=self._default_organization_id,
            team_id=None,
            created_by=user_id,
            name="Legacy API Key (Auto-migrated)",
            key=raw_key if self._settings.persist_plaintext_keys else f"{raw_key[:8]}...",
            key_hash=hash_api_key(raw_key),
            created_at=now,
            status="active",
            permissions=[],
            usage_stats=ApiKeyUsageStats(),
            migrated=True,
            migrated_at=now,
        )
        await self._store.save_api_key(self._default_organization_id, api_key)
        logger.info(
            "legacy_api_key_migrated organization_id=%s key_id=%s",
            self._default_organization_id,
            key_id,
        )
        return api_key

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def _verify_key(self, api_key: TenantApiKey, parsed: ParsedApiKey) -> bool:
        if api_key.team_id != parsed.team_id:
            return False
        return hmac.compare_digest(hash_api_key(parsed.secret), api_key.key_hash)

    def _check_isolation(self, api_key: TenantApiKey, team_id: str | None) -> TenantResolutionResult | None:
        if team_id is None or api_key.team_id == team_id:
            return None
        # Team-scoped keys never cross into another team.
        if api_key.team_id is not None:
            return _failure(
                TenantErrorCode.PERMISSION_DENIED,
                f"API key is scoped to team {api_key.team_id}",
            )
        if self._strict_isolation and not api_key.migrated:
            return _failure(
                TenantErrorCode.PERMISSION_DENIED,
                "Organization-scoped API key cannot act on a team under strict isolation",
            )
        return None

    async def _find_user(self, organization: Organization, api_key: TenantApiKey) -> TeamMember | None:
        if api_key.team_id is not None:
            team = await self._store.get_team(organization.id, api_key.team_id)
            return team.find_member(api_key.created_by) if team is not None else None
        for team in await self._store.list_teams(organization.id):
            member = team.find_member(api_key.created_by)
            if member is not None:
                return member
        return None

    def _schedule_touch(self, organization_id: str, key_id: str) -> None:
        if not self._settings.key_touch_enabled:
            return
        task = asyncio.create_task(self._touch_api_key(organization_id, key_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _touch_api_key(self, organization_id: str, key_id: str) -> None:
        # Update usage counters without blocking the resolution that triggered it.
        try:
            await self._store.touch_api_key(organization_id, key_id)
        except Exception as exc:  # noqa: BLE001 - background touch is best-effort
            logger.warning(
                "api_key_touch_failed organization_id=%s key_id=%s",
                organization_id,
                key_id,
                exc_info=exc,
            )
