from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tenantgate.domain.models import Permission


class TenantErrorCode(str, Enum):
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
    TEAM_NOT_FOUND = "TEAM_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    API_KEY_NOT_FOUND = "API_KEY_NOT_FOUND"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    API_KEY_REVOKED = "API_KEY_REVOKED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    ORGANIZATION_SUSPENDED = "ORGANIZATION_SUSPENDED"
    TEAM_SUSPENDED = "TEAM_SUSPENDED"
    USER_SUSPENDED = "USER_SUSPENDED"
    INVALID_KEY_FORMAT = "INVALID_KEY_FORMAT"


class TenantGateError(Exception):
    """Base error for tenantgate."""

    code: TenantErrorCode | None = None


class StoreError(TenantGateError):
    """Tenant document I/O or decode failure."""


class NotFoundError(TenantGateError):
    """Lifecycle operation targeted a missing organization, team or key."""

    def __init__(self, message: str, code: TenantErrorCode) -> None:
        super().__init__(message)
        self.code = code


class PermissionDeniedError(TenantGateError):
    """Caller lacks one or more required permissions."""

    code = TenantErrorCode.PERMISSION_DENIED

    def __init__(self, message: str, missing_permissions: list[Permission]) -> None:
        super().__init__(message)
        self.missing_permissions = list(missing_permissions)


class QuotaExceededError(TenantGateError):
    """Entity-count ceiling (teams, members, keys) reached."""

    code = TenantErrorCode.QUOTA_EXCEEDED


class ApiKeyStateError(TenantGateError):
    """Illegal API key status transition; revoked and expired are terminal."""


class ConflictError(TenantGateError):
    """Creation targeted an id that already exists."""
