"""
Run Routes
==========
Trigger endpoint for schedulers and interactive admins.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from ...config import SyncSettings
from ...services.orchestrator import SyncOrchestrator, TriggerRequest
from ...services.trust import CallerCredentials
from ..dependencies import get_orchestrator, get_settings
from ..middleware.auth import AuthenticatedUser, get_optional_user
from ..models import RunRequest, RunResponse

router = APIRouter(tags=["Sync"])


@router.post("/run", response_model=RunResponse, response_model_exclude_none=True)
async def run_sources(
    request: Request,
    body: Optional[RunRequest] = None,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    settings: SyncSettings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Sync enabled sources.

    Accepts the cron secret header (global or tenant key) or a session of a
    tenant admin. ``tenant_id`` may also be passed as a query parameter.
    """
    body = body or RunRequest()
    tenant_id = body.tenant_id or request.query_params.get("tenant_id")

    result = await orchestrator.trigger(
        TriggerRequest(tenant_id=tenant_id, source_id=body.source_id, limit=body.limit),
        CallerCredentials(
            cron_secret=request.headers.get(settings.cron.header_name),
            user_id=user.id if user else None,
        ),
    )
    return result.to_dict()
