"""
API Models
==========
Request/response models for the external sources endpoints.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models.provider_config import SourceProvider


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Generic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Error response model."""
    error: str
    message: str
    details: Optional[dict[str, Any]] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: datetime = Field(default_factory=_now)


class OkResponse(BaseModel):
    ok: bool = True


# =============================================================================
# Run Models
# =============================================================================

class RunRequest(BaseModel):
    """Trigger body; every field is optional."""
    tenant_id: Optional[str] = None
    source_id: Optional[str] = None
    limit: Optional[int] = None


class SourceRunResult(BaseModel):
    source_id: str
    status: str
    inserted: Optional[int] = None
    message: Optional[str] = None


class RunResponse(BaseModel):
    ok: bool
    inserted_total: int
    results: list[SourceRunResult]


# =============================================================================
# Source Models
# =============================================================================

class SourceUpsertRequest(BaseModel):
    """Create or update a source. ``secrets`` replaces the stored blob when given."""
    id: Optional[str] = None
    tenant_id: str
    name: str = Field(default="", max_length=200)
    provider: SourceProvider
    enabled: bool = True
    schedule_minutes: Optional[int] = None
    config: dict[str, Any] = Field(default_factory=dict)
    secrets: Optional[dict[str, Any]] = None


class SourceRef(BaseModel):
    source_id: str


class SourceListResponse(BaseModel):
    data: list[dict[str, Any]]


class ConnectionStatusResponse(BaseModel):
    connected: bool


class DriveFolder(BaseModel):
    id: str
    name: str


class DriveFile(BaseModel):
    id: Optional[str] = None
    name: str
    size: Optional[int] = None
    modified_at: Optional[str] = None


class FolderListingResponse(BaseModel):
    parent_id: str
    folders: list[DriveFolder]
    files: list[DriveFile]


class PickedFile(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None


class ImportFilesRequest(BaseModel):
    """Drive files chosen in the picker, imported outside the scheduled runs."""
    source_id: str
    files: list[PickedFile] = Field(default_factory=list)


class ImportFileResult(BaseModel):
    id: str
    status: str
    document_id: Optional[str] = None
    message: Optional[str] = None


class ImportFilesResponse(BaseModel):
    ok: bool
    inserted: int
    results: list[ImportFileResult]


# =============================================================================
# Cron Models
# =============================================================================

class CronTenantRequest(BaseModel):
    tenant_id: str


class CronSettingsUpdate(BaseModel):
    tenant_id: str
    enabled: Optional[bool] = None
    default_run_limit: Optional[int] = None


class CronSettingsResponse(BaseModel):
    configured: bool
    enabled: bool
    default_run_limit: int
    key_prefix: Optional[str] = None
    updated_at: Optional[str] = None


class CronRotateResponse(BaseModel):
    """The plaintext secret is only ever returned here."""
    cron_secret: str
    key_prefix: str


# =============================================================================
# OAuth Models
# =============================================================================

class OAuthStartResponse(BaseModel):
    auth_url: str
    redirect_uri: str
