from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json
import logging
from typing import Any, Callable

from tenantgate.core.config import Settings, get_settings
from tenantgate.domain.models import TenantAuditLog, TenantContext, utc_now
from tenantgate.persistence.store import TenantStore
from tenantgate.services.audit import build_audit_entry


logger = logging.getLogger(__name__)

_TOP_N = 10


class UsageEventType(str, Enum):
    FILE_UPLOAD = "file_upload"
    FILE_DOWNLOAD = "file_download"
    FILE_DELETE = "file_delete"
    DATASET_CREATE = "dataset_create"
    DATASET_READ = "dataset_read"
    DATASET_DELETE = "dataset_delete"
    API_CALL = "api_call"


_USAGE_ACTIONS = {event_type.value for event_type in UsageEventType}
_UPLOAD_ACTIONS = {UsageEventType.FILE_UPLOAD.value, UsageEventType.DATASET_CREATE.value}
_DOWNLOAD_ACTIONS = {UsageEventType.FILE_DOWNLOAD.value}


@dataclass(frozen=True)
class UsageEvent:
    event_type: UsageEventType
    timestamp: datetime
    organization_id: str
    user_id: str
    api_key_id: str
    tool_name: str
    success: bool
    team_id: str | None = None
    resource_id: str | None = None
    bytes_transferred: int | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UserUsage:
    user_id: str
    request_count: int


@dataclass(frozen=True)
class ToolUsage:
    tool_name: str
    request_count: int


@dataclass(frozen=True)
class UsageSummary:
    organization_id: str
    team_id: str | None
    start: datetime
    end: datetime
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_bytes_uploaded: int
    total_bytes_downloaded: int
    top_users: list[UserUsage]
    top_tools: list[ToolUsage]
    events_by_type: dict[str, int]


class UsageTracker:
    """Batched, best-effort usage recording into each organization's audit log.

    Events queue in memory and are flushed when the queue reaches
    ``batch_size``, on every ``flush_interval_s`` tick once :meth:`start` has
    been called, and on :meth:`stop`. A failed flush puts the whole batch
    back at the head of the queue, so retries may write duplicates but never
    drop events. Metadata is coerced to JSON when tracked; values JSON cannot
    encode are kept as strings.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        settings: Settings | None = None,
        enable_tracking: bool | None = None,
        batch_size: int | None = None,
        flush_interval_s: float | None = None,
        summary_scan_limit: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._enable_tracking = settings.usage_tracking_enabled if enable_tracking is None else enable_tracking
        self._batch_size = max(1, batch_size or settings.usage_batch_size)
        self._flush_interval_s = flush_interval_s or settings.usage_flush_interval_s
        self._summary_scan_limit = summary_scan_limit or settings.usage_summary_scan_limit
        self._time_provider = time_provider or utc_now
        self._queue: list[UsageEvent] = []
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def pending_events(self) -> int:
        return len(self._queue)

    async def track_event(
        self,
        context: TenantContext,
        event_type: UsageEventType,
        *,
        tool_name: str,
        success: bool,
        resource_id: str | None = None,
        bytes_transferred: int | None = None,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self._enable_tracking:
            return
        self._queue.append(
            UsageEvent(
                event_type=event_type,
                timestamp=self._time_provider(),
                organization_id=context.organization.id,
                team_id=context.team.id if context.team is not None else None,
                user_id=context.user.user_id,
                api_key_id=context.api_key.id,
                tool_name=tool_name,
                resource_id=resource_id,
                bytes_transferred=bytes_transferred,
                duration_ms=duration_ms,
                success=success,
                metadata=_json_safe(metadata or {}),
            )
        )
        if len(self._queue) >= self._batch_size:
            await self.flush()

    async def track_file_upload(
        self,
        context: TenantContext,
        file_size: int,
        file_id: str,
        duration_ms: float,
        success: bool,
    ) -> None:
        await self.track_event(
            context,
            UsageEventType.FILE_UPLOAD,
            tool_name="lighthouse-upload",
            resource_id=file_id,
            bytes_transferred=file_size,
            duration_ms=duration_ms,
            success=success,
        )

    async def track_file_download(
        self,
        context: TenantContext,
        file_size: int,
        file_id: str,
        duration_ms: float,
        success: bool,
    ) -> None:
        await self.track_event(
            context,
            UsageEventType.FILE_DOWNLOAD,
            tool_name="lighthouse-download",
            resource_id=file_id,
            bytes_transferred=file_size,
            duration_ms=duration_ms,
            success=success,
        )

    async def track_dataset_create(
        self,
        context: TenantContext,
        dataset_id: str,
        duration_ms: float,
        success: bool,
        bytes_transferred: int | None = None,
    ) -> None:
        await self.track_event(
            context,
            UsageEventType.DATASET_CREATE,
            tool_name="lighthouse-create-dataset",
            resource_id=dataset_id,
            bytes_transferred=bytes_transferred,
            duration_ms=duration_ms,
            success=success,
        )

    async def track_api_call(
        self,
        context: TenantContext,
        tool_name: str,
        duration_ms: float,
        success: bool,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track_event(
            context,
            UsageEventType.API_CALL,
            tool_name=tool_name,
            duration_ms=duration_ms,
            success=success,
            metadata=metadata,
        )

    async def flush(self) -> int:
        if not self._queue:
            return 0
        events = self._queue
        self._queue = []

        by_organization: dict[str, list[UsageEvent]] = {}
        for event in events:
            by_organization.setdefault(event.organization_id, []).append(event)

        try:
            for organization_id, organization_events in by_organization.items():
                for event in organization_events:
                    await self._store.append_audit_log(organization_id, _to_audit_entry(event))
        except Exception as exc:  # noqa: BLE001 - flush failures never reach the request path
            logger.error("usage_flush_failed count=%s", len(events), exc_info=exc)
            # Re-queue the whole batch ahead of anything tracked meanwhile.
            self._queue[:0] = events
            return 0

        logger.debug("usage_events_flushed count=%s", len(events))
        return len(events)

    async def get_usage_summary(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        *,
        team_id: str | None = None,
    ) -> UsageSummary:
        # Scans only the most recent entries; there is no time-range index.
        entries = await self._store.get_audit_logs(organization_id, self._summary_scan_limit)
        selected = [
            entry
            for entry in entries
            if entry.action in _USAGE_ACTIONS
            and start <= entry.timestamp <= end
            and (team_id is None or entry.team_id == team_id)
        ]

        user_counts: Counter[str] = Counter()
        tool_counts: Counter[str] = Counter()
        events_by_type: Counter[str] = Counter()
        uploaded = 0
        downloaded = 0
        for entry in selected:
            user_counts[entry.user_id] += 1
            tool_counts[entry.resource] += 1
            events_by_type[entry.action] += 1
            transferred = int(entry.metadata.get("bytes_transferred") or 0)
            if entry.action in _UPLOAD_ACTIONS:
                uploaded += transferred
            elif entry.action in _DOWNLOAD_ACTIONS:
                downloaded += transferred

        successful = sum(1 for entry in selected if entry.result == "success")
        return UsageSummary(
            organization_id=organization_id,
            team_id=team_id,
            start=start,
            end=end,
            total_requests=len(selected),
            successful_requests=successful,
            failed_requests=len(selected) - successful,
            total_bytes_uploaded=uploaded,
            total_bytes_downloaded=downloaded,
            top_users=[UserUsage(user_id=user, request_count=count) for user, count in user_counts.most_common(_TOP_N)],
            top_tools=[ToolUsage(tool_name=tool, request_count=count) for tool, count in tool_counts.most_common(_TOP_N)],
            events_by_type=dict(events_by_type),
        )

    def start(self) -> None:
        if not self._enable_tracking:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._run_flush_loop())

    async def stop(self) -> None:
        # Cancel the timer, then flush whatever is still queued.
        task = self._flush_task
        self._flush_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()

    async def _run_flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_s)
            try:
                await self.flush()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("usage flush cycle failed")


def _json_safe(metadata: dict[str, Any]) -> dict[str, Any]:
    # Values JSON cannot encode are stored as their str() form.
    return json.loads(json.dumps({str(key): value for key, value in metadata.items()}, default=str))


def _to_audit_entry(event: UsageEvent) -> TenantAuditLog:
    metadata = dict(event.metadata)
    metadata["bytes_transferred"] = event.bytes_transferred
    metadata["duration_ms"] = event.duration_ms
    metadata["key_id"] = event.api_key_id
    entry = build_audit_entry(
        organization_id=event.organization_id,
        team_id=event.team_id,
        user_id=event.user_id,
        action=event.event_type.value,
        resource=event.tool_name,
        resource_id=event.resource_id,
        result="success" if event.success else "failure",
        metadata=metadata,
    )
    entry.timestamp = event.timestamp
    return entry
