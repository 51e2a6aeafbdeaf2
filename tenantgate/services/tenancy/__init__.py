from __future__ import annotations

# Re-export tenancy entry points for centralized imports.

from tenantgate.services.tenancy.bootstrap import (
    DefaultOrganizationInitializer,
    add_team_member,
    create_organization,
    create_team,
)
from tenantgate.services.tenancy.resolver import (
    ParsedApiKey,
    TenantResolutionResult,
    TenantResolver,
)

__all__ = [
    "DefaultOrganizationInitializer",
    "ParsedApiKey",
    "TenantResolutionResult",
    "TenantResolver",
    "add_team_member",
    "create_organization",
    "create_team",
]
