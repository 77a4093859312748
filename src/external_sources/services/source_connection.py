"""
Source Connection Service
=========================
OAuth consent and callback handling for cloud drive sources.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import OAuthClientConfig, SyncSettings
from ..connectors.cloud_drive_connector import (
    GOOGLE_OAUTH,
    MICROSOFT_OAUTH,
    OAuthProvider,
    OAuthTokenClient,
)
from ..database import store_errors
from ..exceptions import (
    AuthenticationError,
    ConnectorError,
    InvalidRequestError,
    NotFoundError,
    ReconsentRequiredError,
)
from ..models.provider_config import SourceProvider
from ..models.source import Source
from ..repositories.source_repository import SourceRepository, SourceSecretRepository
from ..security.oauth_state import OAuthStatePayload, OAuthStateSigner, safe_return_path
from ..security.secret_box import SecretBox
from .authorization import AuthorizationStore, require_admin, require_feature

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/external-sources/oauth/{key}/callback"


@dataclass(frozen=True)
class ConnectionProvider:
    """Binds an OAuth provider to the source provider it connects."""
    key: str
    source_provider: SourceProvider
    oauth: OAuthProvider
    mismatch_message: str


CONNECTION_PROVIDERS: dict[str, ConnectionProvider] = {
    "google": ConnectionProvider(
        key="google",
        source_provider=SourceProvider.GOOGLE_DRIVE,
        oauth=GOOGLE_OAUTH,
        mismatch_message="Source is not Google Drive",
    ),
    "microsoft": ConnectionProvider(
        key="microsoft",
        source_provider=SourceProvider.ONEDRIVE,
        oauth=MICROSOFT_OAUTH,
        mismatch_message="Source is not OneDrive",
    ),
}


@dataclass
class AuthorizationRedirect:
    auth_url: str
    redirect_uri: str


def with_query(path: str, params: dict[str, str]) -> str:
    """Append query parameters to a local path that may already have some."""
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}{urlencode(params)}"


class SourceConnectionService:
    """Starts and completes OAuth connections for cloud drive sources."""

    def __init__(
        self,
        settings: SyncSettings,
        session_factory: async_sessionmaker[AsyncSession],
        authorization: AuthorizationStore,
        secret_box: SecretBox,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._authorization = authorization
        self.secret_box = secret_box
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=settings.connect_timeout_seconds)
        self.state_signer = OAuthStateSigner(
            settings.oauth.state_secret,
            ttl_seconds=settings.oauth.state_ttl_seconds,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def provider(self, key: str) -> ConnectionProvider:
        provider = CONNECTION_PROVIDERS.get(key)
        if provider is None:
            raise NotFoundError(f"Unknown OAuth provider: {key}")
        return provider

    def _client_config(self, provider: ConnectionProvider) -> OAuthClientConfig:
        return getattr(self.settings.oauth, provider.key)

    def _token_client(self, provider: ConnectionProvider) -> OAuthTokenClient:
        return OAuthTokenClient(provider.oauth, self._client_config(provider), self._http)

    def redirect_uri(self, provider: ConnectionProvider) -> str:
        configured = self._client_config(provider).redirect_uri
        if configured:
            return configured
        site_url = (self.settings.oauth.site_url or "").rstrip("/")
        return f"{site_url}{CALLBACK_PATH.format(key=provider.key)}"

    def default_return_path(self) -> str:
        return self.settings.oauth.default_return_path

    def return_path_for(self, return_to: Optional[str]) -> str:
        return safe_return_path(return_to) or self.default_return_path()

    async def _load_source(self, provider: ConnectionProvider, source_id: str) -> Source:
        async with store_errors():
            async with self._session_factory() as session:
                source = await SourceRepository(session).get(source_id)

        if source is None:
            raise NotFoundError("Source not found")
        if SourceProvider(source.provider) != provider.source_provider:
            raise InvalidRequestError(provider.mismatch_message)
        return source

    async def start(
        self,
        user_id: str,
        provider_key: str,
        source_id: str,
        return_to: Optional[str] = None,
    ) -> AuthorizationRedirect:
        """Authorize the user for the source and build the consent URL."""
        provider = self.provider(provider_key)
        if not source_id:
            raise InvalidRequestError("source_id is required")

        await require_feature(self._authorization, user_id, self.settings.feature_key)
        source = await self._load_source(provider, source_id)
        await require_admin(self._authorization, user_id, source.tenant_id)

        tokens = self._token_client(provider)
        redirect_uri = self.redirect_uri(provider)
        state = self.state_signer.issue(user_id, source.id, safe_return_path(return_to))
        auth_url = tokens.authorization_url(state, redirect_uri)

        logger.info(f"Started {provider.oauth.display_name} connection for source {source.id}")
        return AuthorizationRedirect(auth_url=auth_url, redirect_uri=redirect_uri)

    def verify_state(self, state: Optional[str]) -> OAuthStatePayload:
        """Verify a callback state token; raises OAuthStateError or ConfigurationError."""
        return self.state_signer.verify(state or "")

    async def complete(
        self,
        user_id: Optional[str],
        provider_key: str,
        code: Optional[str],
        state: OAuthStatePayload,
    ) -> str:
        """
        Exchange the authorization code and store the refresh token.

        ``state`` is the already verified payload. Returns the local path to
        redirect to, tagged with ``external_source=connected``.
        """
        provider = self.provider(provider_key)

        if not user_id or user_id != state.user_id:
            raise AuthenticationError("Unauthorized")
        if not code:
            raise InvalidRequestError("Missing authorization code")

        await require_feature(self._authorization, user_id, self.settings.feature_key)

        try:
            token = await self._token_client(provider).exchange_code(code, self.redirect_uri(provider))
        except ConnectorError as e:
            raise InvalidRequestError(e.message) from e

        if not token.refresh_token:
            raise ReconsentRequiredError(
                "No refresh token returned. Remove the app's access in your account and reconnect."
            )

        source = await self._load_source(provider, state.source_id)
        await require_admin(self._authorization, user_id, source.tenant_id)

        async with store_errors():
            async with self._session_factory.begin() as session:
                await SourceSecretRepository(session, self.secret_box).put(
                    source.id,
                    {"refresh_token": token.refresh_token},
                )

        logger.info(f"Connected {provider.oauth.display_name} for source {source.id}")
        return with_query(self.return_path_for(state.return_to), {"external_source": "connected"})
