from __future__ import annotations

import hashlib

import pytest

from tenantgate.core.config import Settings
from tenantgate.domain.models import Role
from tenantgate.persistence.store import TenantStore
from tenantgate.services.auth.api_keys import (
    format_api_key,
    generate_api_key,
    hash_api_key,
    legacy_key_id,
    normalize_role,
    role_allows,
)
from tenantgate.services.tenancy.resolver import TenantResolver


@pytest.fixture
def parser(tmp_path) -> TenantResolver:
    # Parsing never touches the store.
    settings = Settings(_env_file=None, tenant_root=str(tmp_path), default_organization_id="legacyorg")
    return TenantResolver(TenantStore(tmp_path), settings=settings)


def test_parse_org_scoped_key(parser: TenantResolver) -> None:
    parsed = parser.parse_api_key("org_acme_key_abc123.secret123")
    assert parsed is not None
    assert parsed.organization_id == "acme"
    assert parsed.team_id is None
    assert parsed.key_id == "abc123"
    assert parsed.secret == "secret123"
    assert parsed.is_legacy is False


def test_parse_team_scoped_key(parser: TenantResolver) -> None:
    parsed = parser.parse_api_key("org_acme_team_t1_key_abc.s")
    assert parsed is not None
    assert parsed.organization_id == "acme"
    assert parsed.team_id == "t1"
    assert parsed.key_id == "abc"
    assert parsed.secret == "s"


def test_parse_legacy_key_maps_to_default_organization(parser: TenantResolver) -> None:
    raw = "dc3a5d70.44c9afa688264dd88fe922d4b048f9c2"
    parsed = parser.parse_api_key(raw)
    assert parsed is not None
    assert parsed.is_legacy is True
    assert parsed.organization_id == "legacyorg"
    assert parsed.key_id == hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]
    assert parsed.secret == raw


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not-a-key",
        "org_acme_key_nosecret",
        "org__key_abc.s",
        "DC3A5D70.44C9AFA688264DD88FE922D4B048F9C2",
        "org_.._key_abc.s",
        "org_a/b_key_abc.s",
        "org_acme_key_x/y.s",
        "org_acme_team_.._key_abc.s",
    ],
)
def test_parse_rejects_malformed_keys(parser: TenantResolver, raw: str) -> None:
    assert parser.parse_api_key(raw) is None


def test_generated_key_parses_back_to_its_parts(parser: TenantResolver) -> None:
    key_id, raw_key, key_hash = generate_api_key(organization_id="acme", team_id="research")
    parsed = parser.parse_api_key(raw_key)
    assert parsed is not None
    assert parsed.organization_id == "acme"
    assert parsed.team_id == "research"
    assert parsed.key_id == key_id
    assert hash_api_key(parsed.secret) == key_hash


def test_format_api_key_rejects_ids_that_break_the_grammar() -> None:
    with pytest.raises(ValueError):
        format_api_key(organization_id="my_org", key_id="k", secret="s")
    with pytest.raises(ValueError):
        format_api_key(organization_id="acme", team_id="a_b", key_id="k", secret="s")
    with pytest.raises(ValueError):
        format_api_key(organization_id="acme", key_id="k.1", secret="s")


def test_legacy_key_id_is_stable_prefix_of_sha256() -> None:
    raw = "legacy-api-key-12345678"
    assert legacy_key_id(raw) == legacy_key_id(raw)
    assert len(legacy_key_id(raw)) == 16


def test_normalize_role_and_role_allows() -> None:
    assert normalize_role(" Admin ") == Role.ADMIN
    with pytest.raises(ValueError):
        normalize_role("superuser")
    assert role_allows(role=Role.OWNER, minimum_role=Role.ADMIN)
    assert role_allows(role=Role.MEMBER, minimum_role=Role.MEMBER)
    assert not role_allows(role=Role.VIEWER, minimum_role=Role.MEMBER)
