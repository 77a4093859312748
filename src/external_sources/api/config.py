"""
API Configuration
=================
Server and HTTP surface settings for the external sources API.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class CORSConfig:
    """CORS configuration."""
    allow_origins: list[str] = field(default_factory=lambda: ["*"])
    allow_methods: list[str] = field(default_factory=lambda: ["GET", "POST"])
    allow_headers: list[str] = field(default_factory=lambda: ["*"])
    allow_credentials: bool = True
    max_age: int = 600


@dataclass
class APIConfig:
    """Combined API configuration."""
    # Server settings
    host: str = field(default_factory=lambda: os.getenv("EXTERNAL_SOURCES_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("EXTERNAL_SOURCES_PORT", "8000")))
    debug: bool = False

    # API settings
    title: str = "External Sources API"
    description: str = "Polling and import of files from SFTP, FTPS, Google Drive and OneDrive"
    version: str = "0.1.0"
    route_prefix: str = "/api/external-sources"
    docs_url: str = "/docs"

    cors: CORSConfig = field(default_factory=CORSConfig)

    # Create tables on startup (development only)
    create_schema: bool = False
