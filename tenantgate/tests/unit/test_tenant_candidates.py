from __future__ import annotations

import pytest

from tenantgate.core.config import Settings
from tenantgate.core.errors import ValidationFailure
from tenantgate.services.tenancy.resolver import (
    ResolutionSource,
    TenantResolver,
    first_path_segment,
    normalize_hostname,
)
from tenantgate.services.tenancy.tenants import slugify_subdomain


def _resolver(**overrides) -> TenantResolver:
    # Candidate extraction never touches storage, so no session factory is needed.
    values = {"tenant_base_domain": "example.com", "environment": "test", **overrides}
    settings = Settings(**values)
    return TenantResolver(None, settings=settings)


def test_normalize_hostname_strips_port_case_and_root_dot() -> None:
    assert normalize_hostname("EGDC.Example.COM:8443") == "egdc.example.com"
    assert normalize_hostname("egdc.example.com.") == "egdc.example.com"
    assert normalize_hostname(None) == ""
    assert normalize_hostname("  ") == ""


def test_first_path_segment_skips_empty_segments() -> None:
    assert first_path_segment("//acme/dashboard") == "acme"
    assert first_path_segment("/") is None
    assert first_path_segment(None) is None


def test_subdomain_candidate_is_first_label() -> None:
    candidate, source = _resolver().extract_candidate("EGDC.example.com:443")
    assert candidate == "egdc"
    assert source is ResolutionSource.SUBDOMAIN


def test_apex_domain_has_no_candidate() -> None:
    assert _resolver().extract_candidate("example.com") == (None, None)


def test_foreign_domain_falls_back_to_path() -> None:
    candidate, source = _resolver().extract_candidate("other.org", "/acme/orders")
    assert candidate == "acme"
    assert source is ResolutionSource.PATH


def test_reserved_label_falls_through_to_path() -> None:
    resolver = _resolver()
    assert resolver.extract_candidate("www.example.com", "/egdc/home") == ("egdc", ResolutionSource.PATH)
    assert resolver.extract_candidate("api.example.com") == (None, None)


def test_invalid_subdomain_label_is_rejected() -> None:
    with pytest.raises(ValidationFailure) as excinfo:
        _resolver().extract_candidate("bad_label.example.com")
    assert excinfo.value.field == "host"


def test_dev_alias_maps_to_dev_tenant_outside_production() -> None:
    candidate, source = _resolver().extract_candidate("localhost:8000")
    assert candidate == "dev"
    assert source is ResolutionSource.DEV_ALIAS


def test_dev_alias_ignored_in_production() -> None:
    resolver = _resolver(environment="production")
    assert resolver.extract_candidate("localhost:8000") == (None, None)


def test_unset_environment_disables_dev_aliases(monkeypatch) -> None:
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    settings = Settings(_env_file=None, tenant_base_domain="example.com")
    assert settings.is_production()
    resolver = TenantResolver(None, settings=settings)
    assert resolver.extract_candidate("localhost") == (None, None)
    assert resolver.extract_candidate("127.0.0.1:8000") == (None, None)


def test_slugify_subdomain_reduces_free_text() -> None:
    assert slugify_subdomain("  Acme Widgets, Inc. ") == "acme-widgets-inc"
    assert slugify_subdomain("!!!") == ""
