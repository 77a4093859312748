"""
API Dependencies
================
Accessors for the services wired onto ``app.state`` by ``create_app``.
"""

from __future__ import annotations

from fastapi import Request

from ..config import SyncSettings
from ..services.orchestrator import SyncOrchestrator
from ..services.source_admin import SourceAdminService
from ..services.source_connection import SourceConnectionService


def get_settings(request: Request) -> SyncSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_admin_service(request: Request) -> SourceAdminService:
    return request.app.state.admin_service


def get_connection_service(request: Request) -> SourceConnectionService:
    return request.app.state.connection_service
