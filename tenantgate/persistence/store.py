from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from tenantgate.core.errors import ApiKeyStateError, NotFoundError, StoreError, TenantErrorCode
from tenantgate.domain.models import (
    ApiKeyStatus,
    ApiKeyUsageStats,
    Organization,
    Team,
    TenantApiKey,
    TenantAuditLog,
    UsageQuota,
    utc_now,
)


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_ORGANIZATION_FILE = "organization.json"
_TEAM_FILE = "team.json"
_QUOTA_FILE = "quota.json"
_AUDIT_FILE = "audit-log.jsonl"
_TEAMS_DIR = "teams"
_KEYS_DIR = "keys"

_TERMINAL_KEY_STATUSES = {"revoked", "expired"}


def _safe_segment(value: str, *, kind: str) -> str:
    # Ids become path segments; refuse anything that could escape the tenant root.
    if not value or value in {".", ".."} or "/" in value or "\\" in value or "\x00" in value:
        raise ValueError(f"Invalid {kind} id: {value!r}")
    return value


class TenantStore:
    """File-backed document store for organizations, teams, keys, quotas and audit logs.

    Each entity is one JSON document under ``root``; the audit trail is an
    append-only ``audit-log.jsonl`` per organization. Reads go through a
    process-local cache that is replaced on every save and emptied only by
    :meth:`clear_cache`. There is no cross-process invalidation, so a single
    serving process per root is assumed.

    Read-modify-write updates of API key and quota documents run under a
    per-document ``asyncio.Lock``; code that mutates a quota outside the
    store holds :meth:`quota_lock` across its read and save.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._cache: dict[tuple[str, ...], BaseModel] = {}
        self._locks: dict[tuple[str, ...], asyncio.Lock] = {}

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("tenant_store_init_failed root=%s", self.root, exc_info=exc)
            raise StoreError(f"Failed to initialize tenant store at {self.root}") from exc
        logger.info("tenant_store_initialized root=%s", self.root)

    def clear_cache(self) -> None:
        self._cache.clear()

    # Organizations

    async def get_organization(self, organization_id: str) -> Organization | None:
        return await self._get(
            ("org", organization_id),
            self._organization_dir(organization_id) / _ORGANIZATION_FILE,
            Organization,
        )

    async def save_organization(self, organization: Organization) -> None:
        await self._save(
            ("org", organization.id),
            self._organization_dir(organization.id) / _ORGANIZATION_FILE,
            organization,
        )

    async def list_organizations(self) -> list[Organization]:
        organizations: list[Organization] = []
        for name in await self._list_dir_names(self.root):
            try:
                organization = await self.get_organization(name)
            except ValueError:
                continue
            if organization is not None:
                organizations.append(organization)
        return organizations

    # Teams

    async def get_team(self, organization_id: str, team_id: str) -> Team | None:
        return await self._get(
            ("team", organization_id, team_id),
            self._team_dir(organization_id, team_id) / _TEAM_FILE,
            Team,
        )

    async def save_team(self, organization_id: str, team: Team) -> None:
        await self._save(
            ("team", organization_id, team.id),
            self._team_dir(organization_id, team.id) / _TEAM_FILE,
            team,
        )

    async def list_teams(self, organization_id: str) -> list[Team]:
        teams: list[Team] = []
        teams_dir = self._organization_dir(organization_id) / _TEAMS_DIR
        for name in await self._list_dir_names(teams_dir):
            team = await self.get_team(organization_id, name)
            if team is not None:
                teams.append(team)
        return teams

    async def delete_team(self, organization_id: str, team_id: str) -> None:
        team_dir = self._team_dir(organization_id, team_id)

        def _remove() -> None:
            if not team_dir.exists():
                return
            for child in sorted(team_dir.rglob("*"), reverse=True):
                if child.is_dir():
                    child.rmdir()
                else:
                    child.unlink()
            team_dir.rmdir()

        try:
            await asyncio.to_thread(_remove)
        except OSError as exc:
            raise StoreError(f"Failed to delete team {organization_id}/{team_id}") from exc
        self._cache.pop(("team", organization_id, team_id), None)
        self._cache.pop(("quota", organization_id, team_id), None)

    # API keys

    async def get_api_key(self, organization_id: str, key_id: str) -> TenantApiKey | None:
        return await self._get(
            ("apikey", organization_id, key_id),
            self._api_key_path(organization_id, key_id),
            TenantApiKey,
        )

    async def save_api_key(self, organization_id: str, api_key: TenantApiKey) -> None:
        await self._save(
            ("apikey", organization_id, api_key.id),
            self._api_key_path(organization_id, api_key.id),
            api_key,
        )

    async def list_api_keys(self, organization_id: str) -> list[TenantApiKey]:
        keys_dir = self._organization_dir(organization_id) / _KEYS_DIR

        def _scan() -> list[str]:
            if not keys_dir.is_dir():
                return []
            return sorted(path.stem for path in keys_dir.glob("*.json"))

        try:
            key_ids = await asyncio.to_thread(_scan)
        except OSError as exc:
            raise StoreError(f"Failed to list API keys for {organization_id}") from exc
        api_keys: list[TenantApiKey] = []
        for key_id in key_ids:
            api_key = await self.get_api_key(organization_id, key_id)
            if api_key is not None:
                api_keys.append(api_key)
        return api_keys

    async def update_api_key_status(
        self,
        organization_id: str,
        key_id: str,
        status: ApiKeyStatus,
    ) -> TenantApiKey:
        async with self._lock_for(("apikey", organization_id, key_id)):
            api_key = await self.get_api_key(organization_id, key_id)
            if api_key is None:
                raise NotFoundError(f"API key not found: {key_id}", TenantErrorCode.API_KEY_NOT_FOUND)
            if api_key.status == status:
                return api_key
            # revoked and expired are terminal; nothing returns to active.
            if api_key.status in _TERMINAL_KEY_STATUSES:
                raise ApiKeyStateError(
                    f"API key {key_id} is {api_key.status}; cannot transition to {status}"
                )
            api_key.status = status
            await self.save_api_key(organization_id, api_key)
            return api_key

    async def touch_api_key(self, organization_id: str, key_id: str, *, failed: bool = False) -> None:
        # Only usage fields change; status is whatever the locked re-read returns.
        async with self._lock_for(("apikey", organization_id, key_id)):
            api_key = await self.get_api_key(organization_id, key_id)
            if api_key is None:
                return
            now = utc_now()
            api_key.last_used_at = now
            stats = api_key.usage_stats or ApiKeyUsageStats()
            stats.total_requests += 1
            if failed:
                stats.failed_requests += 1
            stats.last_request_at = now
            api_key.usage_stats = stats
            await self.save_api_key(organization_id, api_key)

    # Quotas

    async def get_quota(self, organization_id: str, team_id: str | None = None) -> UsageQuota | None:
        return await self._get(
            self._quota_cache_key(organization_id, team_id),
            self._quota_path(organization_id, team_id),
            UsageQuota,
        )

    async def save_quota(
        self,
        organization_id: str,
        quota: UsageQuota,
        team_id: str | None = None,
    ) -> None:
        await self._save(
            self._quota_cache_key(organization_id, team_id),
            self._quota_path(organization_id, team_id),
            quota,
        )

    async def update_quota_usage(
        self,
        organization_id: str,
        *,
        storage_used: int | None = None,
        requests_used: int | None = None,
        bandwidth_used: int | None = None,
        team_id: str | None = None,
    ) -> UsageQuota:
        # Absolute assignment of usage counters; callers compute the new totals.
        def _assign(quota: UsageQuota) -> None:
            if storage_used is not None:
                quota.storage_used = storage_used
            if requests_used is not None:
                quota.requests_used = requests_used
            if bandwidth_used is not None:
                quota.bandwidth_used = bandwidth_used

        return await self.update_quota(organization_id, _assign, team_id=team_id)

    async def update_quota(
        self,
        organization_id: str,
        mutate: Callable[[UsageQuota], None],
        *,
        team_id: str | None = None,
    ) -> UsageQuota:
        # Re-read, mutate in place and save while holding the quota lock.
        async with self.quota_lock(organization_id, team_id):
            quota = await self.get_quota(organization_id, team_id)
            if quota is None:
                raise NotFoundError(
                    f"Quota not found for organization: {organization_id}",
                    TenantErrorCode.ORGANIZATION_NOT_FOUND,
                )
            mutate(quota)
            await self.save_quota(organization_id, quota, team_id)
            return quota

    def quota_lock(self, organization_id: str, team_id: str | None = None) -> asyncio.Lock:
        # Not reentrant: never call update_quota while holding it.
        return self._lock_for(self._quota_cache_key(organization_id, team_id))

    # Audit log

    async def append_audit_log(self, organization_id: str, entry: TenantAuditLog) -> None:
        path = self._organization_dir(organization_id) / _AUDIT_FILE
        line = json.dumps(entry.model_dump(mode="json"), separators=(",", ":"), ensure_ascii=False) + "\n"

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)

        try:
            await asyncio.to_thread(_append)
        except OSError as exc:
            raise StoreError(f"Failed to append audit log for {organization_id}") from exc

    async def get_audit_logs(self, organization_id: str, limit: int = 100) -> list[TenantAuditLog]:
        # Reads the whole file; fine for moderate logs, replace with a tail read past that.
        path = self._organization_dir(organization_id) / _AUDIT_FILE

        def _read() -> str | None:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        try:
            content = await asyncio.to_thread(_read)
        except OSError as exc:
            raise StoreError(f"Failed to read audit log for {organization_id}") from exc
        if not content:
            return []

        entries: list[TenantAuditLog] = []
        for line in reversed(content.splitlines()):
            if len(entries) >= limit:
                break
            if not line.strip():
                continue
            try:
                entries.append(TenantAuditLog.model_validate_json(line))
            except ValidationError as exc:
                raise StoreError(f"Corrupt audit log entry for {organization_id}") from exc
        return entries

    # Paths

    def _organization_dir(self, organization_id: str) -> Path:
        return self.root / _safe_segment(organization_id, kind="organization")

    def _team_dir(self, organization_id: str, team_id: str) -> Path:
        return self._organization_dir(organization_id) / _TEAMS_DIR / _safe_segment(team_id, kind="team")

    def _api_key_path(self, organization_id: str, key_id: str) -> Path:
        safe_key = _safe_segment(key_id, kind="key")
        return self._organization_dir(organization_id) / _KEYS_DIR / f"{safe_key}.json"

    def _quota_path(self, organization_id: str, team_id: str | None) -> Path:
        if team_id:
            return self._team_dir(organization_id, team_id) / _QUOTA_FILE
        return self._organization_dir(organization_id) / _QUOTA_FILE

    @staticmethod
    def _quota_cache_key(organization_id: str, team_id: str | None) -> tuple[str, ...]:
        if team_id:
            return ("quota", organization_id, team_id)
        return ("quota", organization_id)

    def _lock_for(self, cache_key: tuple[str, ...]) -> asyncio.Lock:
        lock = self._locks.get(cache_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[cache_key] = lock
        return lock

    # Document I/O

    async def _get(self, cache_key: tuple[str, ...], path: Path, model: type[ModelT]) -> ModelT | None:
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached.model_copy(deep=True)  # type: ignore[return-value]

        data = await self._read_json(path)
        if data is None:
            return None
        try:
            document = model.model_validate(data)
        except ValidationError as exc:
            logger.error("tenant_document_invalid path=%s", path, exc_info=exc)
            raise StoreError(f"Invalid document at {path}") from exc
        self._cache[cache_key] = document
        return document.model_copy(deep=True)

    async def _save(self, cache_key: tuple[str, ...], path: Path, document: BaseModel) -> None:
        payload = document.model_dump(mode="json")
        await self._write_json(path, payload)
        # Cache a private copy so later caller mutations do not leak in unsaved.
        self._cache[cache_key] = document.model_copy(deep=True)

    async def _read_json(self, path: Path) -> Any | None:
        def _read() -> str | None:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        try:
            content = await asyncio.to_thread(_read)
        except OSError as exc:
            logger.error("tenant_document_read_failed path=%s", path, exc_info=exc)
            raise StoreError(f"Failed to read {path}") from exc
        if content is None:
            return None
        try:
            return json.loads(content)
        except ValueError as exc:
            logger.error("tenant_document_decode_failed path=%s", path, exc_info=exc)
            raise StoreError(f"Failed to decode {path}") from exc

    async def _write_json(self, path: Path, data: Any) -> None:
        content = json.dumps(data, indent=2, ensure_ascii=False)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
            try:
                tmp_path.write_text(content, encoding="utf-8")
                os.replace(tmp_path, path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error("tenant_document_write_failed path=%s", path, exc_info=exc)
            raise StoreError(f"Failed to write {path}") from exc

    async def _list_dir_names(self, directory: Path) -> list[str]:
        def _scan() -> list[str]:
            if not directory.is_dir():
                return []
            return sorted(entry.name for entry in directory.iterdir() if entry.is_dir())

        try:
            return await asyncio.to_thread(_scan)
        except OSError as exc:
            raise StoreError(f"Failed to list {directory}") from exc
