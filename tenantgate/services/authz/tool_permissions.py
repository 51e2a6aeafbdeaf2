from __future__ import annotations

from typing import Iterable

from tenantgate.domain.models import Permission
from tenantgate.services.authz.rbac import AccessPolicy


def _policy(resource: str, action: str, *permissions: Permission) -> AccessPolicy:
    return AccessPolicy(resource=resource, action=action, required_permissions=permissions)


# Externally invocable operations and what each one requires.
TOOL_PERMISSIONS: dict[str, AccessPolicy] = {
    "lighthouse-upload": _policy("file", "upload", Permission.FILE_UPLOAD),
    "lighthouse-download": _policy("file", "download", Permission.FILE_DOWNLOAD),
    "lighthouse-get-upload-status": _policy("file", "read", Permission.FILE_LIST),
    "lighthouse-list-files": _policy("file", "list", Permission.FILE_LIST),
    "lighthouse-share-file": _policy("file", "share", Permission.FILE_SHARE),
    "lighthouse-delete-file": _policy("file", "delete", Permission.FILE_DELETE),
    "lighthouse-create-dataset": _policy("dataset", "create", Permission.DATASET_CREATE),
    "lighthouse-get-dataset": _policy("dataset", "read", Permission.DATASET_READ),
    "lighthouse-list-datasets": _policy("dataset", "list", Permission.DATASET_LIST),
    "lighthouse-update-dataset": _policy("dataset", "update", Permission.DATASET_UPDATE),
    "lighthouse-delete-dataset": _policy("dataset", "delete", Permission.DATASET_DELETE),
    "lighthouse-create-api-key": _policy("api_key", "create", Permission.API_KEY_CREATE),
    "lighthouse-list-api-keys": _policy("api_key", "list", Permission.API_KEY_LIST),
    "lighthouse-revoke-api-key": _policy("api_key", "revoke", Permission.API_KEY_REVOKE),
    "lighthouse-create-team": _policy("team", "create", Permission.TEAM_CREATE),
    "lighthouse-get-team": _policy("team", "read", Permission.TEAM_READ),
    "lighthouse-update-team": _policy("team", "update", Permission.TEAM_UPDATE),
    "lighthouse-delete-team": _policy("team", "delete", Permission.TEAM_DELETE),
    "lighthouse-add-team-member": _policy("team", "manage_members", Permission.TEAM_MANAGE_MEMBERS),
    "lighthouse-remove-team-member": _policy("team", "manage_members", Permission.TEAM_MANAGE_MEMBERS),
    "lighthouse-update-organization": _policy("organization", "update", Permission.ORG_UPDATE),
    "lighthouse-view-usage": _policy("organization", "view_usage", Permission.ORG_VIEW_USAGE),
    "lighthouse-view-quota": _policy("quota", "view", Permission.QUOTA_VIEW),
    "lighthouse-update-quota": _policy("quota", "update", Permission.QUOTA_UPDATE),
}


def get_tool_policy(tool_name: str) -> AccessPolicy | None:
    return TOOL_PERMISSIONS.get(tool_name)


def get_tool_permissions(tool_name: str) -> list[Permission]:
    policy = TOOL_PERMISSIONS.get(tool_name)
    return list(policy.required_permissions) if policy else []


def tool_requires_permission(tool_name: str, permission: Permission) -> bool:
    return permission in get_tool_permissions(tool_name)


def get_accessible_tools(user_permissions: Iterable[Permission]) -> list[str]:
    # Advertise only operations whose full requirement set is granted.
    granted = set(user_permissions)
    return [
        tool_name
        for tool_name, policy in TOOL_PERMISSIONS.items()
        if set(policy.required_permissions) <= granted
    ]
