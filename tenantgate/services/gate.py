from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from tenantgate.core.errors import TenantErrorCode
from tenantgate.domain.models import Permission, TenantContext, UsageQuota
from tenantgate.services.authz.rbac import check_access
from tenantgate.services.authz.tool_permissions import get_tool_policy
from tenantgate.services.quota import QuotaManager, QuotaOperation
from tenantgate.services.tenancy.resolver import TenantResolver
from tenantgate.services.usage_tracker import UsageEventType, UsageTracker


logger = logging.getLogger(__name__)

# Operations that consume a byte axis in addition to one request.
_TOOL_AXES: dict[str, QuotaOperation] = {
    "lighthouse-upload": "storage",
    "lighthouse-create-dataset": "storage",
    "lighthouse-download": "bandwidth",
}

_TOOL_EVENTS: dict[str, UsageEventType] = {
    "lighthouse-upload": UsageEventType.FILE_UPLOAD,
    "lighthouse-download": UsageEventType.FILE_DOWNLOAD,
    "lighthouse-delete-file": UsageEventType.FILE_DELETE,
    "lighthouse-create-dataset": UsageEventType.DATASET_CREATE,
    "lighthouse-get-dataset": UsageEventType.DATASET_READ,
    "lighthouse-delete-dataset": UsageEventType.DATASET_DELETE,
}


def tool_quota_axis(tool_name: str) -> QuotaOperation | None:
    return _TOOL_AXES.get(tool_name)


def tool_event_type(tool_name: str) -> UsageEventType:
    return _TOOL_EVENTS.get(tool_name, UsageEventType.API_CALL)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    context: TenantContext | None = None
    error_code: TenantErrorCode | None = None
    message: str | None = None
    missing_permissions: list[Permission] = field(default_factory=list)


class OperationGate:
    """Resolve, authorize and meter one externally invoked operation.

    ``authorize`` runs resolution, the permission check and the quota check in
    that order and stops at the first denial. ``complete`` records quota usage
    and a usage event once the operation has run, whether it succeeded or not.
    """

    def __init__(
        self,
        resolver: TenantResolver,
        quota_manager: QuotaManager,
        usage_tracker: UsageTracker,
    ) -> None:
        self._resolver = resolver
        self._quota_manager = quota_manager
        self._usage_tracker = usage_tracker

    async def authorize(
        self,
        raw_key: str,
        tool_name: str,
        *,
        team_id: str | None = None,
        amount: int = 0,
    ) -> GateDecision:
        resolution = await self._resolver.resolve_tenant(raw_key, team_id=team_id)
        if not resolution.success or resolution.context is None:
            logger.info("gate_denied tool=%s error_code=%s", tool_name, resolution.error_code)
            return GateDecision(
                allowed=False,
                error_code=resolution.error_code,
                message=resolution.error,
            )
        context = resolution.context

        policy = get_tool_policy(tool_name)
        if policy is None:
            return GateDecision(
                allowed=False,
                context=context,
                error_code=TenantErrorCode.PERMISSION_DENIED,
                message=f"Unknown operation: {tool_name}",
            )
        decision = check_access(context, policy)
        if not decision.granted:
            logger.info(
                "gate_denied tool=%s organization_id=%s error_code=%s",
                tool_name,
                context.organization.id,
                TenantErrorCode.PERMISSION_DENIED.value,
            )
            return GateDecision(
                allowed=False,
                context=context,
                error_code=TenantErrorCode.PERMISSION_DENIED,
                message=decision.reason,
                missing_permissions=list(decision.missing_permissions),
            )

        checks: list[tuple[QuotaOperation, int]] = [("request", 1)]
        axis = tool_quota_axis(tool_name)
        if axis is not None:
            checks.append((axis, amount))
        for operation, value in checks:
            quota_result = await self._quota_manager.check_quota(context, operation, value)
            if not quota_result.allowed:
                logger.info(
                    "gate_denied tool=%s organization_id=%s error_code=%s",
                    tool_name,
                    context.organization.id,
                    TenantErrorCode.QUOTA_EXCEEDED.value,
                )
                return GateDecision(
                    allowed=False,
                    context=context,
                    error_code=TenantErrorCode.QUOTA_EXCEEDED,
                    message=quota_result.reason,
                )
        return GateDecision(allowed=True, context=context)

    async def complete(
        self,
        context: TenantContext,
        tool_name: str,
        *,
        success: bool,
        bytes_transferred: int = 0,
        duration_ms: float = 0.0,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UsageQuota:
        # Every call costs a request; byte axes are charged only for work that happened.
        axis = tool_quota_axis(tool_name)
        charged = bytes_transferred if success else 0
        quota = await self._quota_manager.record_usage(
            context,
            requests=1,
            storage=charged if axis == "storage" else 0,
            bandwidth=charged if axis == "bandwidth" else 0,
        )
        await self._usage_tracker.track_event(
            context,
            tool_event_type(tool_name),
            tool_name=tool_name,
            success=success,
            resource_id=resource_id,
            bytes_transferred=bytes_transferred or None,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        return quota
