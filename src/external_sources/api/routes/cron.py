"""
Cron Routes
===========
Tenant cron key rotation and automation settings.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from ...services.source_admin import SourceAdminService
from ..dependencies import get_admin_service
from ..middleware.auth import AuthenticatedUser, get_authenticated_user
from ..models import (
    CronRotateResponse,
    CronSettingsResponse,
    CronSettingsUpdate,
    CronTenantRequest,
    OkResponse,
)

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.get("", response_model=CronSettingsResponse)
async def get_cron_settings(
    tenant_id: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    return await service.get_cron_settings(user.id, tenant_id)


@router.post("", response_model=OkResponse)
async def update_cron_settings(
    body: CronSettingsUpdate,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, bool]:
    return await service.update_cron_settings(
        user.id,
        body.tenant_id,
        enabled=body.enabled,
        default_run_limit=body.default_run_limit,
    )


@router.post("/rotate", response_model=CronRotateResponse)
async def rotate_cron_key(
    body: CronTenantRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceAdminService = Depends(get_admin_service),
) -> dict[str, str]:
    """Generate a new tenant cron key. The plaintext is shown once."""
    return await service.rotate_cron_key(user.id, body.tenant_id)
