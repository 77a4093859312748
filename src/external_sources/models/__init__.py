"""
Sync Models Package
===================
Database models and provider config schemas for external sources.
"""

from .base import Base, utcnow
from .cron_secret import TenantCronSecret
from .provider_config import (
    FTPSSourceConfig,
    GoogleDriveSourceConfig,
    OneDriveSourceConfig,
    SFTPSourceConfig,
    SourceConfig,
    SourceProvider,
    dump_source_config,
    load_source_config,
    validate_source_config,
)
from .source import Source, SourceSecret
from .sync_run import ItemLedgerEntry, RunStatus, SourceRun

__all__ = [
    "Base",
    "utcnow",
    "Source",
    "SourceSecret",
    "SourceProvider",
    "SourceConfig",
    "SFTPSourceConfig",
    "FTPSSourceConfig",
    "GoogleDriveSourceConfig",
    "OneDriveSourceConfig",
    "validate_source_config",
    "load_source_config",
    "dump_source_config",
    "SourceRun",
    "RunStatus",
    "ItemLedgerEntry",
    "TenantCronSecret",
]
