"""
Cloud Drive Connectors
======================
OAuth-backed connectors for Google Drive and OneDrive.

Each list call exchanges the stored refresh token for a short-lived access
token. Providers that rotate refresh tokens (OneDrive) hand the new one back
in the returned credential for the orchestrator to persist.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from ..config import OAuthClientConfig
from ..exceptions import ConfigurationError, ConnectorError
from ..mime import guess_mime_type
from ..models.base import utcnow
from ..models.provider_config import GoogleDriveSourceConfig, OneDriveSourceConfig
from .base import (
    AccessCredential,
    FetchedFile,
    ListResult,
    RemoteObject,
    SourceConnector,
    parse_remote_timestamp,
)

logger = logging.getLogger(__name__)


# =============================================================================
# OAuth Providers
# =============================================================================

@dataclass(frozen=True)
class OAuthProvider:
    """Static OAuth endpoints and scopes for one provider."""
    key: str
    display_name: str
    authorize_url: str
    token_url: str
    scope: str
    authorize_params: dict[str, str] = field(default_factory=dict)
    # Extra form fields sent on every token request
    token_params: dict[str, str] = field(default_factory=dict)


GOOGLE_OAUTH = OAuthProvider(
    key="google",
    display_name="Google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    scope="https://www.googleapis.com/auth/drive.readonly",
    authorize_params={
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
    },
)

MICROSOFT_OAUTH = OAuthProvider(
    key="microsoft",
    display_name="Microsoft",
    authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    scope="offline_access Files.Read User.Read",
    authorize_params={"response_mode": "query", "prompt": "consent"},
    token_params={"scope": "offline_access Files.Read User.Read"},
)


@dataclass
class TokenResponse:
    """Parsed token endpoint response."""
    access_token: str
    expires_in: int = 0
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        return utcnow() + timedelta(seconds=self.expires_in) if self.expires_in else None


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _api_error_message(response: httpx.Response, fallback: str) -> str:
    data = _json_or_empty(response)
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if data.get("error_description"):
        return str(data["error_description"])
    if isinstance(error, str) and error:
        return error
    return response.text or fallback


class OAuthTokenClient:
    """Client-side token endpoint calls for one provider."""

    def __init__(
        self,
        provider: OAuthProvider,
        client_config: OAuthClientConfig,
        http_client: httpx.AsyncClient,
    ):
        self.provider = provider
        self.client_config = client_config
        self._http = http_client

    def _require_configured(self) -> None:
        if not self.client_config.is_configured:
            raise ConfigurationError(f"{self.provider.display_name} OAuth is not configured")

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """Consent screen URL requesting offline access."""
        self._require_configured()
        params = {
            "client_id": self.client_config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.provider.scope,
            "state": state,
            **self.provider.authorize_params,
        }
        return f"{self.provider.authorize_url}?{urlencode(params)}"

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }, f"Failed to refresh {self.provider.display_name} token")

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }, "Token exchange failed")

    async def _token_request(self, form: dict[str, str], failure: str) -> TokenResponse:
        self._require_configured()
        data = {
            "client_id": self.client_config.client_id,
            "client_secret": self.client_config.client_secret,
            **self.provider.token_params,
            **form,
        }

        try:
            response = await self._http.post(self.provider.token_url, data=data)
        except httpx.HTTPError as e:
            raise ConnectorError(f"{failure}: {e}") from e

        if response.status_code >= 400:
            raise ConnectorError(_api_error_message(response, failure))

        payload = _json_or_empty(response)
        if not payload.get("access_token"):
            raise ConnectorError(f"{failure}: no access_token in response")

        return TokenResponse(
            access_token=str(payload["access_token"]),
            expires_in=int(payload.get("expires_in") or 0),
            refresh_token=payload.get("refresh_token") or None,
            scope=payload.get("scope"),
        )


# =============================================================================
# Browsing Results
# =============================================================================

@dataclass
class RemoteFolder:
    id: str
    name: str


@dataclass
class FolderListing:
    """Subfolders and files directly under one folder, for the folder picker."""
    credential: AccessCredential
    parent_id: str
    folders: list[RemoteFolder] = field(default_factory=list)
    files: list[RemoteObject] = field(default_factory=list)


@dataclass
class DriveAccount:
    email: Optional[str] = None
    display_name: Optional[str] = None


def drive_query_literal(value: str) -> str:
    """Quote a value for a Drive ``q`` expression."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


# =============================================================================
# Connectors
# =============================================================================

class CloudDriveConnector(SourceConnector):
    """
    Base for OAuth cloud drive connectors.

    The HTTP client may be shared (injected) or owned by the connector; an
    owned client is closed with the connector.
    """

    oauth_provider: OAuthProvider

    def __init__(
        self,
        config,
        client_config: OAuthClientConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
        max_pages: int = 10,
    ):
        self.config = config
        self.max_pages = max_pages
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self.tokens = OAuthTokenClient(self.oauth_provider, client_config, self._http)

    async def authorize(self, secrets: dict[str, Any]) -> AccessCredential:
        """Trade the stored refresh token for an access token."""
        refresh_token = secrets.get("refresh_token")
        if not refresh_token:
            raise ConfigurationError("Not connected")

        token = await self.tokens.refresh(refresh_token)

        rotated = dict(secrets)
        if token.refresh_token and token.refresh_token != refresh_token:
            logger.info(f"{self.provider_name} issued a rotated refresh token")
            rotated["refresh_token"] = token.refresh_token

        return AccessCredential(
            secrets=rotated,
            access_token=token.access_token,
            expires_at=token.expires_at,
        )

    async def list(self, secrets: dict[str, Any]) -> ListResult:
        credential = await self.authorize(secrets)
        objects = await self._list_files(credential.access_token, self.config.folder_id)
        return ListResult(credential=credential, objects=objects)

    async def browse(self, secrets: dict[str, Any], parent_id: str = "root", file_limit: int = 50) -> FolderListing:
        """List the folders and the first files under ``parent_id``."""
        credential = await self.authorize(secrets)
        folders = await self._list_folders(credential.access_token, parent_id)
        files = await self._list_files(credential.access_token, parent_id)
        return FolderListing(
            credential=credential,
            parent_id=parent_id,
            folders=folders,
            files=files[:max(0, file_limit)],
        )

    async def download(self, obj: RemoteObject, credential: AccessCredential) -> FetchedFile:
        if not credential.access_token:
            raise ConfigurationError("Missing access token for download")

        try:
            response = await self._http.get(
                self._download_url(obj),
                headers=self._auth_headers(credential.access_token),
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise ConnectorError(f"Failed to download {self.provider_name} file {obj.name}: {e}") from e

        if response.status_code >= 400:
            raise ConnectorError(
                _api_error_message(response, f"Failed to download {self.provider_name} file")
            )

        return FetchedFile(
            name=obj.name,
            content=response.content,
            mime_type=guess_mime_type(obj.name),
            remote=obj,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _get_json(
        self,
        url: str,
        access_token: str,
        params: Optional[dict] = None,
        failure: Optional[str] = None,
    ) -> dict[str, Any]:
        failure = failure or f"Failed to list {self.provider_name} files"
        try:
            response = await self._http.get(url, params=params, headers=self._auth_headers(access_token))
        except httpx.HTTPError as e:
            raise ConnectorError(f"{failure}: {e}") from e

        if response.status_code >= 400:
            raise ConnectorError(_api_error_message(response, failure))
        return _json_or_empty(response)

    @abstractmethod
    async def _list_files(self, access_token: str, folder_id: str) -> list[RemoteObject]:
        pass

    @abstractmethod
    async def _list_folders(self, access_token: str, parent_id: str) -> list[RemoteFolder]:
        pass

    @abstractmethod
    async def account(self, credential: AccessCredential) -> DriveAccount:
        """Identity of the connected account."""

    @abstractmethod
    async def item_name(self, credential: AccessCredential, item_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def _download_url(self, obj: RemoteObject) -> str:
        pass


class GoogleDriveConnector(CloudDriveConnector):
    """Google Drive folder connector (drive.readonly)."""

    provider_name = "Google Drive"
    oauth_provider = GOOGLE_OAUTH

    API_BASE = "https://www.googleapis.com/drive/v3"
    FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
    # Native Google formats have no binary content to download
    NATIVE_MIME_PREFIX = "application/vnd.google-apps."

    def __init__(self, config: GoogleDriveSourceConfig, *args, **kwargs):
        super().__init__(config, *args, **kwargs)

    async def _query_files(self, access_token: str, query: str, fields: str, failure: str) -> list[dict]:
        params = {"q": query, "pageSize": "200", "fields": f"nextPageToken, files({fields})"}

        items: list[dict] = []
        for _ in range(self.max_pages):
            data = await self._get_json(f"{self.API_BASE}/files", access_token, params, failure)
            items.extend(item for item in data.get("files") or [] if isinstance(item, dict))

            next_token = data.get("nextPageToken")
            if not next_token:
                break
            params = {**params, "pageToken": next_token}

        return items

    async def _list_files(self, access_token: str, folder_id: str) -> list[RemoteObject]:
        items = await self._query_files(
            access_token,
            f"{drive_query_literal(folder_id)} in parents and trashed = false",
            "id,name,mimeType,modifiedTime,size,md5Checksum",
            "Failed to list Google Drive files",
        )

        objects: list[RemoteObject] = []
        for item in items:
            mime_type = item.get("mimeType") or ""
            if mime_type.startswith(self.NATIVE_MIME_PREFIX):
                continue
            size = item.get("size")
            objects.append(RemoteObject(
                name=item.get("name") or "",
                remote_id=item["id"],
                modified_at=parse_remote_timestamp(item.get("modifiedTime")),
                size=int(size) if size not in (None, "") else None,
                metadata={"md5Checksum": item.get("md5Checksum"), "mimeType": mime_type},
            ))
        return objects

    async def _list_folders(self, access_token: str, parent_id: str) -> list[RemoteFolder]:
        items = await self._query_files(
            access_token,
            f"{drive_query_literal(parent_id)} in parents and "
            f"mimeType = '{self.FOLDER_MIME_TYPE}' and trashed = false",
            "id,name",
            "Failed to list Google Drive folders",
        )
        return [RemoteFolder(id=item["id"], name=item.get("name") or "") for item in items]

    async def account(self, credential: AccessCredential) -> DriveAccount:
        data = await self._get_json(
            f"{self.API_BASE}/about",
            credential.access_token,
            {"fields": "user(displayName,emailAddress)"},
            "Failed to get Google Drive account",
        )
        user = data.get("user") or {}
        return DriveAccount(email=user.get("emailAddress"), display_name=user.get("displayName"))

    async def item_name(self, credential: AccessCredential, item_id: str) -> Optional[str]:
        data = await self._get_json(
            f"{self.API_BASE}/files/{item_id}",
            credential.access_token,
            {"fields": "name"},
            "Failed to resolve Google Drive item",
        )
        return data.get("name") or None

    def _download_url(self, obj: RemoteObject) -> str:
        return f"{self.API_BASE}/files/{obj.remote_id}?alt=media"


class OneDriveConnector(CloudDriveConnector):
    """OneDrive folder connector via Microsoft Graph."""

    provider_name = "OneDrive"
    oauth_provider = MICROSOFT_OAUTH

    API_BASE = "https://graph.microsoft.com/v1.0"

    def __init__(self, config: OneDriveSourceConfig, *args, **kwargs):
        super().__init__(config, *args, **kwargs)

    def _item_url(self, item_id: str) -> str:
        if item_id == "root":
            return f"{self.API_BASE}/me/drive/root"
        return f"{self.API_BASE}/me/drive/items/{item_id}"

    async def _children(self, access_token: str, folder_id: str, select: str, failure: str) -> list[dict]:
        url: Optional[str] = f"{self._item_url(folder_id)}/children"
        params: Optional[dict] = {"$select": select, "$top": "200"}

        items: list[dict] = []
        for _ in range(self.max_pages):
            data = await self._get_json(url, access_token, params, failure)
            items.extend(item for item in data.get("value") or [] if isinstance(item, dict))

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
            if not url:
                break

        return items

    async def _list_files(self, access_token: str, folder_id: str) -> list[RemoteObject]:
        items = await self._children(
            access_token,
            folder_id,
            "id,name,size,file,folder,lastModifiedDateTime",
            "Failed to list OneDrive files",
        )

        objects: list[RemoteObject] = []
        for item in items:
            # The file facet may be an empty object
            if item.get("file") is None:
                continue
            size = item.get("size")
            objects.append(RemoteObject(
                name=item.get("name") or "",
                remote_id=item.get("id") or "",
                modified_at=parse_remote_timestamp(item.get("lastModifiedDateTime")),
                size=int(size) if isinstance(size, (int, float)) else None,
            ))
        return objects

    async def _list_folders(self, access_token: str, parent_id: str) -> list[RemoteFolder]:
        items = await self._children(access_token, parent_id, "id,name,folder", "Failed to list OneDrive folders")
        return [
            RemoteFolder(id=item.get("id") or "", name=item.get("name") or "")
            for item in items
            if item.get("folder") is not None
        ]

    async def account(self, credential: AccessCredential) -> DriveAccount:
        data = await self._get_json(
            f"{self.API_BASE}/me",
            credential.access_token,
            {"$select": "displayName,mail,userPrincipalName"},
            "Failed to get OneDrive account",
        )
        return DriveAccount(
            email=data.get("mail") or data.get("userPrincipalName"),
            display_name=data.get("displayName"),
        )

    async def item_name(self, credential: AccessCredential, item_id: str) -> Optional[str]:
        data = await self._get_json(
            self._item_url(item_id),
            credential.access_token,
            {"$select": "name"},
            "Failed to resolve OneDrive item",
        )
        return data.get("name") or None

    def _download_url(self, obj: RemoteObject) -> str:
        return f"{self.API_BASE}/me/drive/items/{obj.remote_id}/content"
