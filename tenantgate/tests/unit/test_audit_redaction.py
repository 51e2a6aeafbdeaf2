from __future__ import annotations

from tenantgate.services.audit import build_audit_entry, sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "id_token": "secret-token",
        "raw_key": "org_acme_key_k.secret",
        "client_secret": "super-secret",
        "nested": {"authorization": "Bearer abc", "items": [{"password": "hunter2"}]},
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["id_token"] == "[REDACTED]"
    assert sanitized["raw_key"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0]["password"] == "[REDACTED]"
    assert sanitized["safe"] == "value"


def test_build_audit_entry_sanitizes_and_defaults_resource_id() -> None:
    entry = build_audit_entry(
        organization_id="acme",
        user_id="u1",
        action="auth.api_key.created",
        resource="api_key",
        result="success",
        metadata={"api_key": "plaintext", "key_name": "ci"},
    )
    assert entry.id.startswith("evt_")
    assert entry.resource_id == ""
    assert entry.metadata == {"api_key": "[REDACTED]", "key_name": "ci"}
