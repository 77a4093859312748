"""
Source Routes
=============
Source listing, configuration, connection tests, disconnects and the cloud
drive folder picker.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from ...services.source_admin import SourceAdminService
from ..dependencies import get_admin_service
from ..middleware.auth import AuthenticatedUser, get_authenticated_user
from ..models import (
    ConnectionStatusResponse,
    FolderListingResponse,
    ImportFilesRequest,
    ImportFilesResponse,
    OkResponse,
    SourceListResponse,
    SourceRef,
    SourceUpsertRequest,
)

router = APIRouter(tags=["Sources"])


# =============================================================================
# Listing
# =============================================================================

@router.get("/", response_model=SourceListResponse)
async def list_sources(
    tenant_id: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    """List a tenant's sources, newest first. Secrets are never returned."""
    return {"data": await service.list_sources(user.id, tenant_id)}


@router.get("/status", response_model=ConnectionStatusResponse)
async def connection_status(
    source_id: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, bool]:
    return await service.connection_status(user.id, source_id)


# =============================================================================
# Configuration
# =============================================================================

@router.post("/upsert")
async def upsert_source(
    body: SourceUpsertRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    source = await service.upsert_source(
        user.id,
        body.tenant_id,
        name=body.name,
        provider=body.provider,
        config=body.config,
        enabled=body.enabled,
        schedule_minutes=body.schedule_minutes,
        secrets=body.secrets,
        source_id=body.id,
    )
    return {"data": source}


@router.post("/test")
async def test_source(
    body: SourceRef,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> JSONResponse:
    """Connect and list up to 25 matching files without importing anything."""
    result = await service.test_source(user.id, body.source_id)
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.ok else status.HTTP_400_BAD_REQUEST,
        content=result.to_dict(),
    )


@router.post("/disconnect", response_model=OkResponse)
async def disconnect_source(
    body: SourceRef,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, bool]:
    return await service.disconnect(user.id, body.source_id)


# =============================================================================
# Cloud Drive Picker
# =============================================================================

@router.get("/folders", response_model=FolderListingResponse)
async def list_folders(
    source_id: Optional[str] = Query(default=None),
    parent_id: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    """Subfolders and up to 50 files of ``parent_id`` (default: drive root)."""
    return await service.browse_folders(user.id, source_id, parent_id)


@router.get("/whoami")
async def whoami(
    source_id: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    return await service.whoami(user.id, source_id)


@router.post("/import-file", response_model=ImportFilesResponse, response_model_exclude_none=True)
async def import_files(
    body: ImportFilesRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    files = [f.model_dump() for f in body.files]
    return await service.import_files(user.id, body.source_id, files)
