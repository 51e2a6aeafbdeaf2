from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import inspect
import json
import logging
from typing import Any, Callable, Iterable, Literal

import httpx

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import TenantErrorCode
from tenantgate.domain.models import Organization, Team, TenantContext, UsageQuota, utc_now
from tenantgate.persistence.store import TenantStore
from tenantgate.services.audit import record_event


logger = logging.getLogger(__name__)

QuotaOperation = Literal["storage", "request", "bandwidth"]
QuotaAxis = Literal["storage", "requests", "bandwidth"]

_BYTE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB"]


@dataclass(frozen=True)
class QuotaRemaining:
    storage: int
    requests: int
    bandwidth: int


@dataclass(frozen=True)
class QuotaCheckResult:
    # Admission decision plus remaining headroom on every axis.
    allowed: bool
    remaining: QuotaRemaining
    reset_date: datetime
    reason: str | None = None
    error_code: TenantErrorCode | None = None


@dataclass(frozen=True)
class AxisStatus:
    used: int
    limit: int
    percentage: float
    formatted: str


@dataclass(frozen=True)
class QuotaStatus:
    storage: AxisStatus
    requests: AxisStatus
    bandwidth: AxisStatus
    reset_date: datetime


@dataclass(frozen=True)
class QuotaAlert:
    # Emitted once per threshold crossed by a single increment.
    organization_id: str
    team_id: str | None
    user_id: str
    axis: QuotaAxis
    threshold: float
    percentage: float
    used: int
    limit: int


# Handlers may be plain callables or coroutine functions.
AlertHandler = Callable[[QuotaAlert], Any]


def format_bytes(value: int) -> str:
    # Render byte counts with binary units for quota reasons and status output.
    if value <= 0:
        return "0 B"
    size = float(value)
    index = 0
    while size >= 1024 and index < len(_BYTE_UNITS) - 1:
        size /= 1024
        index += 1
    return f"{round(size, 2):g} {_BYTE_UNITS[index]}"


def next_reset_date(now: datetime) -> datetime:
    # Monthly counters reset at 00:00 UTC on the first day of the following month.
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def build_default_quota(
    settings: Settings,
    *,
    organization: Organization | None = None,
    team: Team | None = None,
    now: datetime | None = None,
) -> UsageQuota:
    # Seed limits from settings, the organization's storage default and team overrides.
    storage_limit = settings.quota_storage_limit
    if organization is not None:
        storage_limit = organization.settings.default_storage_quota
    request_limit = settings.quota_request_limit
    bandwidth_limit = settings.quota_bandwidth_limit
    max_members = settings.quota_max_members_per_team
    max_api_keys = settings.quota_max_api_keys

    overrides = team.quota_overrides if team is not None else None
    if overrides is not None:
        storage_limit = overrides.storage_limit if overrides.storage_limit is not None else storage_limit
        request_limit = overrides.request_limit if overrides.request_limit is not None else request_limit
        bandwidth_limit = (
            overrides.bandwidth_limit if overrides.bandwidth_limit is not None else bandwidth_limit
        )
        if overrides.max_members_per_team is not None:
            max_members = overrides.max_members_per_team
        if overrides.max_api_keys is not None:
            max_api_keys = overrides.max_api_keys

    return UsageQuota(
        storage_limit=storage_limit,
        request_limit=request_limit,
        bandwidth_limit=bandwidth_limit,
        max_teams=settings.quota_max_teams,
        max_members_per_team=max_members,
        max_api_keys=max_api_keys,
        reset_date=next_reset_date(now or utc_now()),
    )


async def ensure_quota(
    store: TenantStore,
    organization: Organization,
    *,
    team: Team | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> UsageQuota:
    # Lazily seed a quota document the first time a tenant scope needs one.
    team_id = team.id if team is not None else None
    quota = await store.get_quota(organization.id, team_id)
    if quota is not None:
        return quota
    quota = build_default_quota(settings or get_settings(), organization=organization, team=team, now=now)
    await store.save_quota(organization.id, quota, team_id)
    logger.info("quota_seeded organization_id=%s team_id=%s", organization.id, team_id)
    return quota


def remaining_for(quota: UsageQuota) -> QuotaRemaining:
    return QuotaRemaining(
        storage=max(quota.storage_limit - quota.storage_used, 0),
        requests=max(quota.request_limit - quota.requests_used, 0),
        bandwidth=max(quota.bandwidth_limit - quota.bandwidth_used, 0),
    )


def evaluate_quota(quota: UsageQuota, operation: QuotaOperation, amount: int) -> QuotaCheckResult:
    # Pure admission check; callers handle monthly rollover before evaluating.
    remaining = remaining_for(quota)
    reason: str | None = None
    if operation == "storage":
        if quota.storage_used + amount > quota.storage_limit:
            reason = (
                f"Storage quota exceeded. Used: {format_bytes(quota.storage_used)} "
                f"of {format_bytes(quota.storage_limit)}"
            )
    elif operation == "request":
        if quota.requests_used + amount > quota.request_limit:
            reason = f"Request quota exceeded. Used: {quota.requests_used} of {quota.request_limit}"
    elif operation == "bandwidth":
        if quota.bandwidth_used + amount > quota.bandwidth_limit:
            reason = (
                f"Bandwidth quota exceeded. Used: {format_bytes(quota.bandwidth_used)} "
                f"of {format_bytes(quota.bandwidth_limit)}"
            )
    else:
        raise ValueError(f"Unsupported quota operation: {operation}")

    if reason is not None:
        return QuotaCheckResult(
            allowed=False,
            remaining=remaining,
            reset_date=quota.reset_date,
            reason=reason,
            error_code=TenantErrorCode.QUOTA_EXCEEDED,
        )
    return QuotaCheckResult(allowed=True, remaining=remaining, reset_date=quota.reset_date)


def _percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return used / limit * 100


def crossed_thresholds(previous: int, current: int, limit: int, thresholds: Iterable[float]) -> list[float]:
    # A threshold fires when an increment moves usage from below it to at or above it.
    before = _percentage(previous, limit)
    after = _percentage(current, limit)
    return [threshold for threshold in sorted(thresholds) if before < threshold <= after]


def get_quota_status(quota: UsageQuota) -> QuotaStatus:
    return QuotaStatus(
        storage=AxisStatus(
            used=quota.storage_used,
            limit=quota.storage_limit,
            percentage=_percentage(quota.storage_used, quota.storage_limit),
            formatted=f"{format_bytes(quota.storage_used)} / {format_bytes(quota.storage_limit)}",
        ),
        requests=AxisStatus(
            used=quota.requests_used,
            limit=quota.request_limit,
            percentage=_percentage(quota.requests_used, quota.request_limit),
            formatted=f"{quota.requests_used} / {quota.request_limit}",
        ),
        bandwidth=AxisStatus(
            used=quota.bandwidth_used,
            limit=quota.bandwidth_limit,
            percentage=_percentage(quota.bandwidth_used, quota.bandwidth_limit),
            formatted=f"{format_bytes(quota.bandwidth_used)} / {format_bytes(quota.bandwidth_limit)}",
        ),
        reset_date=quota.reset_date,
    )


def _alert_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signature for quota alert webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class QuotaManager:
    """Admission control and accounting for storage, request and bandwidth quotas.

    Every read-modify-write of a tenant's quota document holds the store's
    ``quota_lock``, which key issuance and team creation share. ``check_quota``
    followed by ``record_usage`` still leaves a window between the two calls
    where concurrent callers can jointly overshoot a limit; ``check_and_record``
    closes it by admitting and recording in one locked step.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
        alert_thresholds: Iterable[float] | None = None,
        enable_auto_reset: bool | None = None,
        alert_handlers: Iterable[AlertHandler] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or utc_now
        self._thresholds = sorted(
            alert_thresholds if alert_thresholds is not None else self._settings.quota_alert_thresholds
        )
        self._enable_auto_reset = (
            self._settings.quota_auto_reset_enabled if enable_auto_reset is None else enable_auto_reset
        )
        self._alert_handlers: list[AlertHandler] = (
            list(alert_handlers) if alert_handlers is not None else [self._default_alert_handler]
        )
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def alert_thresholds(self) -> list[float]:
        return list(self._thresholds)

    def add_alert_handler(self, handler: AlertHandler) -> None:
        self._alert_handlers.append(handler)

    async def check_quota(
        self,
        context: TenantContext,
        operation: QuotaOperation,
        amount: int = 0,
    ) -> QuotaCheckResult:
        organization_id, team_id = _quota_scope(context)
        async with self._store.quota_lock(organization_id, team_id):
            quota = await self._load_quota(context)
            if operation != "storage" and self._reset_due(quota):
                quota = await self._reset_locked(organization_id, team_id, quota)
        context.quota = quota
        return evaluate_quota(quota, operation, amount)

    async def check_and_record(
        self,
        context: TenantContext,
        operation: QuotaOperation,
        amount: int,
        *,
        requests: int = 1,
    ) -> QuotaCheckResult:
        # Admit and record atomically per tenant; a denied check records nothing.
        organization_id, team_id = _quota_scope(context)
        async with self._store.quota_lock(organization_id, team_id):
            quota = await self._load_quota(context)
            if operation != "storage" and self._reset_due(quota):
                quota = await self._reset_locked(organization_id, team_id, quota)
            result = evaluate_quota(quota, operation, amount)
            if not result.allowed:
                context.quota = quota
                return result
            storage, bandwidth = _axis_amounts(operation, amount)
            quota, alerts = await self._apply_usage_locked(
                context,
                quota,
                storage=storage,
                requests=amount if operation == "request" else requests,
                bandwidth=bandwidth,
            )
        context.quota = quota
        await self._dispatch_alerts(alerts)
        return QuotaCheckResult(allowed=True, remaining=remaining_for(quota), reset_date=quota.reset_date)

    async def record_usage(
        self,
        context: TenantContext,
        *,
        storage: int = 0,
        requests: int = 0,
        bandwidth: int = 0,
    ) -> UsageQuota:
        # Increments are unconditional; admission is the caller's job.
        organization_id, team_id = _quota_scope(context)
        async with self._store.quota_lock(organization_id, team_id):
            quota = await self._load_quota(context)
            quota, alerts = await self._apply_usage_locked(
                context,
                quota,
                storage=storage,
                requests=requests,
                bandwidth=bandwidth,
            )
        context.quota = quota
        await self._dispatch_alerts(alerts)
        return quota

    async def reset_monthly_quota(self, organization_id: str, team_id: str | None = None) -> UsageQuota | None:
        async with self._store.quota_lock(organization_id, team_id):
            quota = await self._store.get_quota(organization_id, team_id)
            if quota is None:
                return None
            return await self._reset_locked(organization_id, team_id, quota)

    def get_quota_status(self, quota: UsageQuota) -> QuotaStatus:
        return get_quota_status(quota)

    async def sweep_expired_quotas(self) -> int:
        # Reset every organization and team quota whose reset date has elapsed.
        reset_count = 0
        for organization in await self._store.list_organizations():
            scopes: list[str | None] = [None]
            scopes.extend(team.id for team in await self._store.list_teams(organization.id))
            for team_id in scopes:
                quota = await self._store.get_quota(organization.id, team_id)
                if quota is not None and self._reset_due(quota):
                    await self.reset_monthly_quota(organization.id, team_id)
                    reset_count += 1
                # Yield between tenants so a large sweep never starves request handling.
                await asyncio.sleep(0)
        if reset_count:
            logger.info("quota_sweep_completed reset_count=%s", reset_count)
        return reset_count

    def start(self) -> None:
        if not self._enable_auto_reset:
            return
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._run_sweep_loop())

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_sweep_loop(self) -> None:
        interval = max(1, int(self._settings.quota_reset_check_interval_s))
        while True:
            try:
                await self.sweep_expired_quotas()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("quota sweep cycle failed")
            await asyncio.sleep(interval)

    def _reset_due(self, quota: UsageQuota) -> bool:
        return self._time_provider() >= quota.reset_date

    async def _load_quota(self, context: TenantContext) -> UsageQuota:
        # Re-read under the lock; the context snapshot may be stale.
        organization_id, team_id = _quota_scope(context)
        quota = await self._store.get_quota(organization_id, team_id)
        if quota is not None:
            return quota
        return await ensure_quota(
            self._store,
            context.organization,
            team=context.team if team_id else None,
            settings=self._settings,
            now=self._time_provider(),
        )

    async def _reset_locked(self, organization_id: str, team_id: str | None, quota: UsageQuota) -> UsageQuota:
        # Storage is absolute; only the monthly counters roll over.
        now = self._time_provider()
        quota.requests_used = 0
        quota.bandwidth_used = 0
        quota.reset_date = next_reset_date(now)
        await self._store.save_quota(organization_id, quota, team_id)
        logger.info(
            "quota_reset organization_id=%s team_id=%s next_reset=%s",
            organization_id,
            team_id,
            quota.reset_date.isoformat(),
        )
        return quota

    async def _apply_usage_locked(
        self,
        context: TenantContext,
        quota: UsageQuota,
        *,
        storage: int,
        requests: int,
        bandwidth: int,
    ) -> tuple[UsageQuota, list[QuotaAlert]]:
        organization_id, team_id = _quota_scope(context)
        previous = (quota.storage_used, quota.requests_used, quota.bandwidth_used)
        # Storage may shrink on deletes but never below zero.
        quota.storage_used = max(quota.storage_used + storage, 0)
        quota.requests_used += max(requests, 0)
        quota.bandwidth_used += max(bandwidth, 0)
        await self._store.save_quota(organization_id, quota, team_id)

        alerts: list[QuotaAlert] = []
        axes: list[tuple[QuotaAxis, int, int, int]] = [
            ("storage", previous[0], quota.storage_used, quota.storage_limit),
            ("requests", previous[1], quota.requests_used, quota.request_limit),
            ("bandwidth", previous[2], quota.bandwidth_used, quota.bandwidth_limit),
        ]
        for axis, before, after, limit in axes:
            for threshold in crossed_thresholds(before, after, limit, self._thresholds):
                alerts.append(
                    QuotaAlert(
                        organization_id=organization_id,
                        team_id=team_id,
                        user_id=context.user.user_id,
                        axis=axis,
                        threshold=threshold,
                        percentage=_percentage(after, limit),
                        used=after,
                        limit=limit,
                    )
                )
        return quota, alerts

    async def _dispatch_alerts(self, alerts: list[QuotaAlert]) -> None:
        # Handler failures must never abort the usage recording that triggered them.
        for alert in alerts:
            for handler in list(self._alert_handlers):
                try:
                    result = handler(alert)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:  # noqa: BLE001 - alert handlers are isolated
                    logger.error(
                        "quota_alert_handler_failed organization_id=%s axis=%s threshold=%s",
                        alert.organization_id,
                        alert.axis,
                        alert.threshold,
                        exc_info=exc,
                    )

    async def _default_alert_handler(self, alert: QuotaAlert) -> None:
        logger.warning(
            "quota_threshold_reached organization_id=%s team_id=%s axis=%s threshold=%s percentage=%.1f",
            alert.organization_id,
            alert.team_id,
            alert.axis,
            alert.threshold,
            alert.percentage,
        )
        metadata = {
            "axis": alert.axis,
            "threshold": alert.threshold,
            "percentage": round(alert.percentage, 2),
            "used": alert.used,
            "limit": alert.limit,
        }
        await record_event(
            self._store,
            organization_id=alert.organization_id,
            team_id=alert.team_id,
            user_id=alert.user_id,
            action="quota.threshold_reached",
            resource="quota",
            metadata=metadata,
        )
        await self._safe_webhook(
            alert,
            payload={
                "event_type": "quota.threshold_reached",
                "organization_id": alert.organization_id,
                "team_id": alert.team_id,
                **metadata,
                "timestamp": self._time_provider().isoformat(),
            },
        )

    async def _send_webhook(self, event_type: str, payload: dict[str, Any]) -> None:
        # Post signed alert payloads with a short timeout.
        settings = self._settings
        if not settings.quota_alert_webhook_enabled:
            return
        if not settings.quota_alert_webhook_url or not settings.quota_alert_webhook_secret:
            logger.warning("quota_alert_webhook_missing_config")
            return

        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        signature = _alert_signature(settings.quota_alert_webhook_secret, body)
        headers = {
            "Content-Type": "application/json",
            "X-Quota-Signature": signature,
            "X-Quota-Event": event_type,
        }

        timeout = settings.quota_alert_webhook_timeout_ms / 1000.0
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(settings.quota_alert_webhook_url, content=body, headers=headers)
            response.raise_for_status()

    async def _safe_webhook(self, alert: QuotaAlert, *, payload: dict[str, Any]) -> None:
        # Fire webhook calls and log failures without breaking usage recording.
        event_type = "quota.threshold_reached"
        try:
            await self._send_webhook(event_type, payload)
        except Exception as exc:  # noqa: BLE001 - webhook failures are non-fatal
            logger.warning("quota_alert_webhook_failed event_type=%s", event_type, exc_info=exc)
            await record_event(
                self._store,
                organization_id=alert.organization_id,
                team_id=alert.team_id,
                user_id="quota_webhook",
                action="quota.webhook.failure",
                resource="quota",
                result="failure",
                error_message=str(exc),
                metadata={"event_type": event_type},
            )


def _quota_scope(context: TenantContext) -> tuple[str, str | None]:
    # Team-scoped keys draw on the team quota, everything else on the organization's.
    return context.organization.id, context.api_key.team_id


def _axis_amounts(operation: QuotaOperation, amount: int) -> tuple[int, int]:
    if operation == "storage":
        return amount, 0
    if operation == "bandwidth":
        return 0, amount
    return 0, 0
