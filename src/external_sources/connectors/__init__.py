"""
Provider Connectors Package
===========================
SFTP, FTPS and OAuth cloud drive connectors behind one polling contract.
"""

from .base import (
    AccessCredential,
    FetchedFile,
    ListResult,
    RemoteObject,
    SourceConnector,
    matches_glob,
    select_candidates,
)
from .cloud_drive_connector import (
    GOOGLE_OAUTH,
    MICROSOFT_OAUTH,
    GoogleDriveConnector,
    OAuthProvider,
    OAuthTokenClient,
    OneDriveConnector,
    TokenResponse,
)
from .ftps_connector import FTPSConnector
from .registry import ConnectorRegistry
from .sftp_connector import SFTPConnector

__all__ = [
    "AccessCredential",
    "FetchedFile",
    "ListResult",
    "RemoteObject",
    "SourceConnector",
    "matches_glob",
    "select_candidates",
    "GOOGLE_OAUTH",
    "MICROSOFT_OAUTH",
    "GoogleDriveConnector",
    "OneDriveConnector",
    "OAuthProvider",
    "OAuthTokenClient",
    "TokenResponse",
    "FTPSConnector",
    "SFTPConnector",
    "ConnectorRegistry",
]
