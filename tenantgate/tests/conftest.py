from __future__ import annotations

import pytest

from tenantgate.core.config import Settings, get_settings
from tenantgate.persistence.db import build_engine, build_sessionmaker, create_schema
from tenantgate.services.auth.blacklist import MemoryTokenBlacklist
from tenantgate.services.container import CoreServices
from tenantgate.services.mfa.delivery import OutboxCodeDelivery


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path) -> Settings:
    # Point every settings read at a throwaway SQLite file and a fixed base domain.
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'tenantgate.db'}")
    monkeypatch.setenv("TENANT_BASE_DOMAIN", "example.com")
    monkeypatch.setenv("TOKEN_HASH_SECRET", "test-token-pepper")
    monkeypatch.setenv("TOKEN_BLACKLIST_BACKEND", "memory")
    monkeypatch.setenv("MFA_SECRET_KEY", "test-mfa-secret-key")
    monkeypatch.setenv("MFA_DELIVERY_WEBHOOK_URL", "")
    monkeypatch.setenv("AUDIT_ALERT_WEBHOOK_URL", "")
    monkeypatch.setenv("IDP_AUTO_PROVISION", "true")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(test_settings):
    # Fresh schema per test; the file lives under tmp_path.
    engine = build_engine(test_settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
def outbox() -> OutboxCodeDelivery:
    return OutboxCodeDelivery()


@pytest.fixture
async def services(session_factory, test_settings, outbox) -> CoreServices:
    # Wire the full core with in-process delivery and blacklist; built-in roles are seeded.
    core = CoreServices.build(
        session_factory,
        settings=test_settings,
        blacklist=MemoryTokenBlacklist(),
        delivery=outbox,
    )
    await core.roles.ensure_system_roles()
    yield core
    await core.audit.stop()
