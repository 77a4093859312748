"""
Connector Registry
==================
Maps a source provider to the connector implementation for it.
"""

from typing import Callable, Optional

import httpx

from ..config import SyncSettings
from ..models.provider_config import SourceConfig, SourceProvider
from .base import SourceConnector
from .cloud_drive_connector import GoogleDriveConnector, OneDriveConnector
from .ftps_connector import FTPSConnector
from .sftp_connector import SFTPConnector

ConnectorFactory = Callable[[SourceConfig], SourceConnector]


class ConnectorRegistry:
    """Builds a fresh connector per source run."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or SyncSettings()
        self._http_client = http_client
        self._factories: dict[SourceProvider, ConnectorFactory] = {
            SourceProvider.SFTP: self._build_sftp,
            SourceProvider.FTPS: self._build_ftps,
            SourceProvider.GOOGLE_DRIVE: self._build_google_drive,
            SourceProvider.ONEDRIVE: self._build_onedrive,
        }

    def register(self, provider: SourceProvider, factory: ConnectorFactory) -> None:
        """Override the factory for a provider."""
        self._factories[SourceProvider(provider)] = factory

    def build(self, provider: SourceProvider, config: SourceConfig) -> SourceConnector:
        factory = self._factories.get(SourceProvider(provider))
        if factory is None:
            raise NotImplementedError(f"Provider not implemented: {provider}")
        return factory(config)

    def _build_sftp(self, config) -> SourceConnector:
        return SFTPConnector(config, timeout=self.settings.connect_timeout_seconds)

    def _build_ftps(self, config) -> SourceConnector:
        return FTPSConnector(config, timeout=self.settings.connect_timeout_seconds)

    def _build_google_drive(self, config) -> SourceConnector:
        return GoogleDriveConnector(
            config,
            self.settings.oauth.google,
            http_client=self._http_client,
            timeout=self.settings.connect_timeout_seconds,
            max_pages=self.settings.max_list_pages,
        )

    def _build_onedrive(self, config) -> SourceConnector:
        return OneDriveConnector(
            config,
            self.settings.oauth.microsoft,
            http_client=self._http_client,
            timeout=self.settings.connect_timeout_seconds,
            max_pages=self.settings.max_list_pages,
        )
