from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from tenantgate.core.errors import StoreError
from tenantgate.domain.models import AuditResult, TenantAuditLog, utc_now
from tenantgate.persistence.store import TenantStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "raw_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def new_audit_id() -> str:
    return f"evt_{uuid4().hex}"


def build_audit_entry(
    *,
    organization_id: str,
    user_id: str,
    action: str,
    resource: str,
    result: AuditResult,
    team_id: str | None = None,
    resource_id: str | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> TenantAuditLog:
    return TenantAuditLog(
        id=new_audit_id(),
        organization_id=organization_id,
        team_id=team_id,
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=resource_id or "",
        timestamp=utc_now(),
        result=result,
        error_message=error_message,
        metadata=sanitize_metadata(metadata or {}),
    )


async def record_event(
    store: TenantStore,
    *,
    organization_id: str,
    user_id: str,
    action: str,
    resource: str,
    result: AuditResult = "success",
    team_id: str | None = None,
    resource_id: str | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
    best_effort: bool = True,
) -> TenantAuditLog | None:
    # Write audit entries in a best-effort manner to avoid breaking caller flows.
    entry = build_audit_entry(
        organization_id=organization_id,
        team_id=team_id,
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        result=result,
        error_message=error_message,
        metadata=metadata,
    )
    try:
        await store.append_audit_log(organization_id, entry)
    except StoreError as exc:
        if not best_effort:
            logger.error("audit_event_write_failed action=%s organization_id=%s", action, organization_id, exc_info=exc)
            raise
        logger.warning("audit_event_write_failed action=%s organization_id=%s", action, organization_id, exc_info=exc)
        return None
    return entry
