from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


_GIB = 1024 * 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "tenantgate"
    log_level: str = "INFO"

    # Root directory holding one sub-directory per organization.
    tenant_root: str = "./var/tenants"
    # Organization and team that legacy (pre-tenancy) keys are mapped into.
    default_organization_id: str = "default"
    default_team_id: str = "default"
    # Deny keys whose team differs from the operation's team context.
    strict_isolation: bool = False
    # Legacy single-tenant key migrated into the default organization on bootstrap.
    legacy_api_key: str | None = None
    # Keep the formatted key string on the key document for one-time display tooling.
    persist_plaintext_keys: bool = True
    # Schedule last_used_at/request counter updates after successful resolution.
    key_touch_enabled: bool = True

    # Default quota seeded for new organizations and teams.
    quota_storage_limit: int = 10 * _GIB
    quota_request_limit: int = 100_000
    quota_bandwidth_limit: int = 100 * _GIB
    quota_max_teams: int = 10
    quota_max_members_per_team: int = 50
    quota_max_api_keys: int = 100

    # Default organization settings applied on creation.
    org_default_rate_limit: int = 60
    org_allow_team_creation: bool = True
    org_require_2fa: bool = False
    org_data_retention_days: int = 0
    org_max_file_size: int = 100 * 1024 * 1024
    org_enable_audit_log: bool = True

    # Usage percentages that fire quota alerts when crossed.
    quota_alert_thresholds: list[float] = [80.0, 90.0, 95.0]
    # Sweep all tenants for elapsed reset dates on a fixed cadence.
    quota_auto_reset_enabled: bool = True
    quota_reset_check_interval_s: int = 3600
    # Optional signed webhook for quota alerts.
    quota_alert_webhook_enabled: bool = False
    quota_alert_webhook_url: str | None = None
    quota_alert_webhook_secret: str | None = None
    # Keep webhook timeouts short so alerts never stall usage recording.
    quota_alert_webhook_timeout_ms: int = 2000

    # Batched usage event recording into the audit log.
    usage_tracking_enabled: bool = True
    usage_batch_size: int = 100
    usage_flush_interval_s: float = 30.0
    # Upper bound of audit entries scanned by usage summaries.
    usage_summary_scan_limit: int = 10_000


@lru_cache
def get_settings() -> Settings:
    return Settings()
