"""
Test fixtures for the synchronization engine.

Database-backed tests run against a temporary SQLite file through aiosqlite,
with fake connectors and a recording import pipeline in place of the
external collaborators.
"""

from __future__ import annotations

import base64
import os
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from ..config import (
    CronConfig,
    DatabaseConfig,
    EncryptionConfig,
    ImportPipelineConfig,
    OAuthClientConfig,
    OAuthConfig,
    SessionAuthConfig,
    SyncSettings,
)
from ..connectors.registry import ConnectorRegistry
from ..database import create_schema, create_session_factory
from ..models import Source, SourceProvider, SourceRun
from ..models.cron_secret import TenantCronSecret
from ..models.sync_run import RunStatus
from ..repositories.source_repository import SourceSecretRepository
from ..security.cron_keys import CronKeyVerifier, generate_cron_key
from ..security.secret_box import SecretBox
from ..services.authorization import InMemoryAuthorizationStore
from ..services.orchestrator import SyncOrchestrator
from .fakes import (
    ADMIN_USER,
    CRON_PEPPER,
    GLOBAL_SECRET,
    MEMBER_USER,
    TENANT_A,
    FakeConnector,
    FakeImportPipeline,
    FakeRemote,
)


# =============================================================================
# Configuration fixtures
# =============================================================================

@pytest.fixture
def master_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def settings(tmp_path, master_key) -> SyncSettings:
    """Engine settings with every environment-backed field pinned."""
    return SyncSettings(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}"),
        cron=CronConfig(global_secret=GLOBAL_SECRET, key_pepper=CRON_PEPPER),
        oauth=OAuthConfig(
            state_secret="state-secret-" + "x" * 32,
            site_url="https://app.example.com",
            google=OAuthClientConfig(client_id="google-client", client_secret="google-secret"),
            microsoft=OAuthClientConfig(client_id="ms-client", client_secret="ms-secret"),
        ),
        encryption=EncryptionConfig(master_key=master_key, master_key_id="master-v1", retired_keys=[]),
        session=SessionAuthConfig(secret_key="session-secret", issuer="ledgerai", audience="ledgerai-api"),
        import_pipeline=ImportPipelineConfig(endpoint_url=None, api_token=None),
        connector_timeout_seconds=5.0,
        stale_run_minutes=60,
        max_concurrent_sources=1,
    )


@pytest.fixture
def secret_box(settings) -> SecretBox:
    return SecretBox(settings.encryption)


@pytest.fixture
def authorization() -> InMemoryAuthorizationStore:
    """Admin of tenant A with the automation feature, plus a plain member."""
    store = InMemoryAuthorizationStore()
    store.assign_role(ADMIN_USER, TENANT_A, "COMPANY_ADMIN")
    store.grant_feature(ADMIN_USER, "ai_access")
    store.assign_role(MEMBER_USER, TENANT_A, "MEMBER")
    store.grant_feature(MEMBER_USER, "ai_access")
    return store


# =============================================================================
# Database fixtures
# =============================================================================

@pytest_asyncio.fixture
async def engine(settings):
    """SQLite engine with the sync schema installed."""
    engine = create_async_engine(settings.database.url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def bare_engine(tmp_path):
    """SQLite engine without any tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# =============================================================================
# Engine fixtures
# =============================================================================

@pytest.fixture
def remotes() -> defaultdict:
    """Fake remote state keyed by SFTP/FTPS host or cloud folder id."""
    return defaultdict(FakeRemote)


@pytest.fixture
def connectors(settings, remotes) -> ConnectorRegistry:
    registry = ConnectorRegistry(settings)

    def build(config) -> FakeConnector:
        key = getattr(config, "host", None) or getattr(config, "folder_id")
        return FakeConnector(remotes[key])

    for provider in SourceProvider:
        registry.register(provider, build)
    return registry


@pytest.fixture
def import_pipeline() -> FakeImportPipeline:
    return FakeImportPipeline()


@pytest.fixture
def make_orchestrator(settings, session_factory, connectors, import_pipeline, authorization, secret_box):
    """Build an orchestrator, optionally overriding settings fields."""

    def factory(**overrides) -> SyncOrchestrator:
        return SyncOrchestrator(
            settings=settings.model_copy(update=overrides) if overrides else settings,
            session_factory=session_factory,
            connectors=connectors,
            import_pipeline=import_pipeline,
            authorization=authorization,
            secret_box=secret_box,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator) -> SyncOrchestrator:
    return make_orchestrator()


# =============================================================================
# Data helpers
# =============================================================================

@pytest.fixture
def add_source(session_factory, secret_box):
    """Insert a source (and optionally its secrets); returns the source id."""

    async def create(
        tenant_id: str = TENANT_A,
        provider: SourceProvider = SourceProvider.SFTP,
        config: Optional[dict[str, Any]] = None,
        secrets: Optional[dict[str, Any]] = None,
        schedule_minutes: int = 60,
        last_run_at: Optional[datetime] = None,
        enabled: bool = True,
        created_at: Optional[datetime] = None,
    ) -> str:
        if config is None:
            if provider.is_cloud_drive:
                config = {"folder_id": "folder-1"}
            else:
                config = {"host": "files.example.com", "remote_path": "/inbox"}

        async with session_factory.begin() as session:
            source = Source(
                tenant_id=tenant_id,
                name=f"{provider.value} source",
                provider=provider,
                enabled=enabled,
                schedule_minutes=schedule_minutes,
                last_run_at=last_run_at,
                config=config,
            )
            if created_at is not None:
                source.created_at = created_at
            session.add(source)
            await session.flush()
            source_id = source.id

            if secrets is not None:
                await SourceSecretRepository(session, secret_box).put(source_id, secrets)

        return source_id

    return create


@pytest.fixture
def add_run(session_factory):
    """Insert a run row directly, e.g. one left RUNNING by a crashed worker."""

    async def create(source_id: str, started_at: datetime, tenant_id: str = TENANT_A) -> str:
        async with session_factory.begin() as session:
            run = SourceRun(
                tenant_id=tenant_id,
                source_id=source_id,
                status=RunStatus.RUNNING,
                started_at=started_at,
            )
            session.add(run)
            await session.flush()
            return run.id

    return create


@pytest.fixture
def add_cron_secret(session_factory):
    """Install a tenant cron key; returns the plaintext key."""

    async def create(tenant_id: str = TENANT_A, enabled: bool = True, default_run_limit: int = 10) -> str:
        key, prefix = generate_cron_key()
        async with session_factory.begin() as session:
            session.add(TenantCronSecret(
                tenant_id=tenant_id,
                key_prefix=prefix,
                key_hash=CronKeyVerifier(CRON_PEPPER).hash(key),
                enabled=enabled,
                default_run_limit=default_run_limit,
            ))
        return key

    return create
