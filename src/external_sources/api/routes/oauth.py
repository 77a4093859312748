"""
OAuth Routes
============
Consent redirect and callback for Google Drive and OneDrive sources.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from ...exceptions import InvalidRequestError, SyncError
from ...services.source_connection import SourceConnectionService, with_query
from ..dependencies import get_connection_service
from ..middleware.auth import AuthenticatedUser, get_authenticated_user, get_optional_user
from ..models import OAuthStartResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["OAuth"])


@router.get("/{provider}/start", response_model=None)
async def start_connection(
    provider: str,
    source_id: Optional[str] = Query(default=None),
    return_to: Optional[str] = Query(default=None),
    mode: Optional[str] = Query(default=None),
    user: AuthenticatedUser = Depends(get_authenticated_user),
    service: SourceConnectionService = Depends(get_connection_service),
) -> Union[RedirectResponse, OAuthStartResponse]:
    """Redirect to the provider's consent screen, or return the URL with ``mode=json``."""
    redirect = await service.start(user.id, provider, source_id, return_to)

    if mode == "json":
        return OAuthStartResponse(auth_url=redirect.auth_url, redirect_uri=redirect.redirect_uri)
    return RedirectResponse(redirect.auth_url, status_code=302)


@router.get("/{provider}/callback")
async def complete_connection(
    provider: str,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    service: SourceConnectionService = Depends(get_connection_service),
) -> RedirectResponse:
    """
    Finish the connection and redirect back to the app.

    State failures are returned as JSON errors; anything after the state is
    verified redirects to the return path with ``external_source=error``.
    """
    service.provider(provider)
    payload = service.verify_state(state)
    return_path = service.return_path_for(payload.return_to)

    try:
        if error:
            raise InvalidRequestError(error_description or error)
        target = await service.complete(user.id if user else None, provider, code, payload)
    except SyncError as e:
        logger.warning(f"OAuth callback for source {payload.source_id} failed: {e.message}")
        target = with_query(return_path, {"external_source": "error", "reason": e.message})

    return RedirectResponse(target, status_code=302)
