from __future__ import annotations

# Re-export access-control helpers for centralized imports.

from tenantgate.services.authz.rbac import (
    AccessDecision,
    AccessPolicy,
    assert_all_permissions,
    assert_permission,
    can_modify_user,
    can_perform_action,
    check_access,
    filter_by_permission,
    get_user_permissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
    is_organization_owner,
    is_team_admin,
)
from tenantgate.services.authz.tool_permissions import (
    TOOL_PERMISSIONS,
    get_accessible_tools,
    get_tool_permissions,
    get_tool_policy,
    tool_requires_permission,
)

__all__ = [
    "AccessDecision",
    "AccessPolicy",
    "TOOL_PERMISSIONS",
    "assert_all_permissions",
    "assert_permission",
    "can_modify_user",
    "can_perform_action",
    "check_access",
    "filter_by_permission",
    "get_accessible_tools",
    "get_tool_permissions",
    "get_tool_policy",
    "get_user_permissions",
    "has_all_permissions",
    "has_any_permission",
    "has_permission",
    "is_organization_owner",
    "is_team_admin",
    "tool_requires_permission",
]
