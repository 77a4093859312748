"""
External Sources
================
Pulls files from SFTP, FTPS, Google Drive and OneDrive, deduplicates them
against an import ledger and hands new files to the document import pipeline.
"""

from .config import SyncSettings
from .exceptions import SyncError

__version__ = "0.1.0"

__all__ = ["SyncSettings", "SyncError", "__version__"]
