"""
API Routes
==========
FastAPI routers for the external sources endpoints.
"""

from __future__ import annotations

from .cron import router as cron_router
from .oauth import router as oauth_router
from .run import router as run_router
from .sources import router as sources_router

__all__ = [
    "cron_router",
    "oauth_router",
    "run_router",
    "sources_router",
]
