"""
External Sources - API Layer
============================
FastAPI surface for triggering syncs and administering sources.
"""

from __future__ import annotations

from .app import create_app, main
from .config import APIConfig, CORSConfig
from .models import ErrorResponse, HealthResponse

__all__ = [
    "APIConfig",
    "CORSConfig",
    "ErrorResponse",
    "HealthResponse",
    "main",
    "create_app",
]
