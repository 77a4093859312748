"""
Sync Configuration
==================
Environment-backed settings for the synchronization engine.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


class DatabaseConfig(BaseModel):
    """Relational store configuration."""
    url: str = Field(
        default_factory=lambda: os.getenv(
            "EXTERNAL_SOURCES_DATABASE_URL",
            "postgresql+asyncpg://postgres@localhost:5432/ledger",
        )
    )
    pool_size: int = 5
    echo: bool = False


class CronConfig(BaseModel):
    """Unattended trigger configuration."""
    global_secret: Optional[str] = Field(default_factory=lambda: os.getenv("EXTERNAL_FETCH_CRON_SECRET"))
    key_pepper: Optional[str] = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_CRON_KEY_PEPPER"))
    header_name: str = "x-ledgerai-cron-secret"
    default_run_limit: int = 10
    max_run_limit: int = 50


class OAuthClientConfig(BaseModel):
    """Client credentials for one OAuth provider."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class OAuthConfig(BaseModel):
    """OAuth connection flow configuration."""
    state_secret: Optional[str] = Field(default_factory=lambda: os.getenv("EXTERNAL_OAUTH_STATE_SECRET"))
    state_ttl_seconds: int = 15 * 60
    site_url: Optional[str] = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_SITE_URL"))
    default_return_path: str = "/dashboard/settings?tab=external-sources"
    google: OAuthClientConfig = Field(
        default_factory=lambda: OAuthClientConfig(
            client_id=os.getenv("GOOGLE_OAUTH_CLIENT_ID"),
            client_secret=os.getenv("GOOGLE_OAUTH_CLIENT_SECRET"),
            redirect_uri=os.getenv("GOOGLE_OAUTH_REDIRECT_URI"),
        )
    )
    microsoft: OAuthClientConfig = Field(
        default_factory=lambda: OAuthClientConfig(
            client_id=os.getenv("MICROSOFT_OAUTH_CLIENT_ID"),
            client_secret=os.getenv("MICROSOFT_OAUTH_CLIENT_SECRET"),
            redirect_uri=os.getenv("MICROSOFT_OAUTH_REDIRECT_URI"),
        )
    )


class EncryptionConfig(BaseModel):
    """Envelope encryption for source secrets."""
    master_key: Optional[str] = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_MASTER_KEY"))
    master_key_id: str = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_MASTER_KEY_ID", "master-v1"))
    # Previous keys still accepted for decryption, as "key_id:base64key" pairs
    retired_keys: list[str] = Field(
        default_factory=lambda: [
            k for k in os.getenv("EXTERNAL_SOURCES_RETIRED_KEYS", "").split(",") if k
        ]
    )


class SessionAuthConfig(BaseModel):
    """Interactive session token validation."""
    secret_key: str = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_JWT_SECRET", "change-me-in-production"))
    algorithm: str = "HS256"
    issuer: str = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_JWT_ISSUER", "ledgerai"))
    audience: str = Field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_JWT_AUDIENCE", "ledgerai-api"))
    cookie_name: str = "access_token"


class ImportPipelineConfig(BaseModel):
    """Downstream document import endpoint."""
    endpoint_url: Optional[str] = Field(default_factory=lambda: os.getenv("DOCUMENT_IMPORT_URL"))
    api_token: Optional[str] = Field(default_factory=lambda: os.getenv("DOCUMENT_IMPORT_TOKEN"))
    timeout_seconds: float = 60.0


class SyncSettings(BaseModel):
    """Top-level settings for the synchronization engine."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    session: SessionAuthConfig = Field(default_factory=SessionAuthConfig)
    import_pipeline: ImportPipelineConfig = Field(default_factory=ImportPipelineConfig)

    connector_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("EXTERNAL_SOURCES_CONNECTOR_TIMEOUT", "120"))
    )
    connect_timeout_seconds: float = 20.0
    stale_run_minutes: int = Field(default_factory=lambda: _env_int("EXTERNAL_SOURCES_STALE_RUN_MINUTES", 60))
    max_concurrent_sources: int = Field(default_factory=lambda: _env_int("EXTERNAL_SOURCES_MAX_CONCURRENCY", 1))
    feature_key: str = "ai_access"
    test_list_limit: int = 25
    max_list_pages: int = 10
    min_schedule_minutes: int = 5
    default_schedule_minutes: int = 60

    def clamp_run_limit(self, value: Optional[int], default: Optional[int] = None) -> int:
        """Clamp a requested batch size to [1, max_run_limit]."""
        fallback = default if default is not None else self.cron.default_run_limit
        requested = value if value is not None else fallback
        return max(1, min(self.cron.max_run_limit, int(requested)))
