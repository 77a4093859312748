"""
Import Pipeline
===============
Hands fetched files to the downstream document import service.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from ..config import ImportPipelineConfig
from ..connectors.base import FetchedFile
from ..exceptions import ConfigurationError, ConnectorError, SyncError
from ..models.provider_config import SourceConfig

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_file_name(name: str) -> str:
    """Replace characters outside ``[A-Za-z0-9._-]`` with underscores."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name or "")
    return cleaned or "file"


@dataclass
class ImportedDocument:
    """Identifier of the document created downstream."""
    document_id: str
    file_name: str
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ImportPipeline(Protocol):
    """Downstream document import, owned by the host platform."""

    async def import_fetched_file(
        self,
        *,
        tenant_id: str,
        fetched: FetchedFile,
        config: SourceConfig,
        source_id: str,
    ) -> ImportedDocument:
        ...


class HttpImportPipeline:
    """
    Import pipeline that posts files to the documents endpoint.

    Sends the bytes as multipart ``file`` plus tenant, source and the
    source's ``document_type``/``bank_account_id`` as form fields.
    """

    def __init__(
        self,
        config: Optional[ImportPipelineConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or ImportPipelineConfig()
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def import_fetched_file(
        self,
        *,
        tenant_id: str,
        fetched: FetchedFile,
        config: SourceConfig,
        source_id: str,
    ) -> ImportedDocument:
        if not self.config.endpoint_url:
            raise ConfigurationError("Document import endpoint is not configured")
        if not fetched.content:
            raise SyncError(f"External file rejected: {fetched.name} is empty")

        file_name = sanitize_file_name(fetched.name)
        data = {"tenant_id": tenant_id, "source_id": source_id}
        if config.document_type:
            data["document_type"] = config.document_type
        if config.bank_account_id:
            data["bank_account_id"] = config.bank_account_id

        client = await self._get_client()
        try:
            response = await client.post(
                self.config.endpoint_url,
                data=data,
                files={"file": (file_name, fetched.content, fetched.mime_type)},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncError(
                f"External file rejected: {file_name} ({e.response.status_code})"
            ) from e
        except httpx.HTTPError as e:
            raise ConnectorError(f"Document import failed for {file_name}: {e}") from e

        body = response.json()
        document_id = body.get("document_id") or body.get("id")
        if not document_id:
            raise SyncError(f"External file rejected: {file_name} (no document id returned)")

        logger.info(f"Imported {file_name} as document {document_id} for tenant {tenant_id}")
        return ImportedDocument(document_id=str(document_id), file_name=file_name, extra=body)
