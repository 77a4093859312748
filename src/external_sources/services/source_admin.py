"""
Source Administration
=====================
Tenant admin operations: source CRUD, connection tests, cloud drive folder
browsing, hand-picked imports and cron settings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SyncSettings
from ..connectors.base import AccessCredential, RemoteObject, SourceConnector, select_candidates
from ..connectors.registry import ConnectorRegistry
from ..database import store_errors
from ..exceptions import (
    ConfigurationError,
    ConnectorError,
    InfrastructureError,
    InvalidRequestError,
    LedgerConflictError,
    NotFoundError,
    SourceValidationError,
    SyncError,
)
from ..models.provider_config import (
    SourceConfig,
    SourceProvider,
    dump_source_config,
    load_source_config,
    validate_source_config,
)
from ..models.source import Source
from ..repositories.cron_secret_repository import CronSecretRepository
from ..repositories.ledger_repository import LedgerRepository
from ..repositories.source_repository import SourceRepository, SourceSecretRepository
from ..security.cron_keys import CronKeyVerifier, generate_cron_key
from ..security.secret_box import SecretBox
from .authorization import AuthorizationStore, require_admin, require_feature, require_member
from .import_pipeline import ImportPipeline

logger = logging.getLogger(__name__)

CRON_NOT_CONFIGURED = "Cron key not configured yet. Rotate/generate first."
FOLDER_PICKER_FILE_LIMIT = 50

T = TypeVar("T")


class ImportStatus(str, Enum):
    """Outcome of one hand-picked file."""
    IMPORTED = "IMPORTED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@dataclass
class SourceTestResult:
    ok: bool
    files: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "files": self.files}
        return {"ok": False, "error": self.error}


class SourceAdminService:
    """Admin-facing operations on sources, their secrets and tenant cron keys."""

    def __init__(
        self,
        settings: SyncSettings,
        session_factory: async_sessionmaker[AsyncSession],
        authorization: AuthorizationStore,
        connectors: ConnectorRegistry,
        secret_box: SecretBox,
        import_pipeline: Optional[ImportPipeline] = None,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._authorization = authorization
        self.connectors = connectors
        self.secret_box = secret_box
        self.import_pipeline = import_pipeline

    async def _get_source(self, source_id: Optional[str]) -> Source:
        if not source_id:
            raise InvalidRequestError("source_id is required")
        async with store_errors():
            async with self._session_factory() as session:
                source = await SourceRepository(session).get(source_id)
        if source is None:
            raise NotFoundError("Source not found")
        return source

    async def _get_secrets(self, source_id: str) -> dict[str, Any]:
        async with store_errors():
            async with self._session_factory() as session:
                return await SourceSecretRepository(session, self.secret_box).get(source_id)

    # =========================================================================
    # Sources
    # =========================================================================

    async def list_sources(self, user_id: str, tenant_id: Optional[str]) -> list[dict[str, Any]]:
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        await require_member(self._authorization, user_id, tenant_id)

        async with store_errors():
            async with self._session_factory() as session:
                sources = await SourceRepository(session).list_for_tenant(tenant_id)
        return [s.to_dict() for s in sources]

    async def upsert_source(
        self,
        user_id: str,
        tenant_id: Optional[str],
        name: str,
        provider: SourceProvider,
        config: Optional[dict[str, Any]],
        enabled: bool = True,
        schedule_minutes: Optional[int] = None,
        secrets: Optional[dict[str, Any]] = None,
        source_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create or update a source; secrets are replaced only when given."""
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        await require_admin(self._authorization, user_id, tenant_id)

        try:
            validated = validate_source_config(provider, config)
        except ValidationError as e:
            raise SourceValidationError(
                f"Invalid {SourceProvider(provider).value} config",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        schedule = max(
            self.settings.min_schedule_minutes,
            schedule_minutes or self.settings.default_schedule_minutes,
        )

        async with store_errors():
            async with self._session_factory.begin() as session:
                repository = SourceRepository(session)
                if source_id and await repository.get(source_id, tenant_id=tenant_id) is None:
                    raise NotFoundError("Source not found")

                source = await repository.upsert(
                    tenant_id=tenant_id,
                    name=name,
                    provider=SourceProvider(provider),
                    enabled=enabled,
                    schedule_minutes=schedule,
                    config=dump_source_config(validated),
                    created_by=user_id,
                    source_id=source_id,
                )
                if secrets is not None:
                    await SourceSecretRepository(session, self.secret_box).put(source.id, secrets)
                data = source.to_dict()

        return data

    async def test_source(self, user_id: str, source_id: Optional[str]) -> SourceTestResult:
        """Connect and list the first matching files without importing."""
        source = await self._get_source(source_id)
        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_admin(self._authorization, user_id, source.tenant_id)

        secrets = await self._get_secrets(source.id)
        timeout = self.settings.connector_timeout_seconds

        try:
            config = load_source_config(source.provider, source.config)
            connector = self.connectors.build(SourceProvider(source.provider), config)
            async with connector:
                listing = await asyncio.wait_for(connector.list(secrets), timeout=timeout)
        except asyncio.TimeoutError:
            return SourceTestResult(ok=False, error=f"Listing timed out after {timeout:g}s")
        except (ConfigurationError, ConnectorError) as e:
            logger.warning(f"Connection test failed for source {source.id}: {e.message}")
            return SourceTestResult(ok=False, error=e.message)

        if listing.credential.secrets != secrets:
            async with store_errors():
                async with self._session_factory.begin() as session:
                    await SourceSecretRepository(session, self.secret_box).put(
                        source.id, listing.credential.secrets
                    )

        matching = select_candidates(listing.objects, config.file_glob, self.settings.test_list_limit)
        files = [
            {
                "name": obj.name,
                "remote_path": obj.remote_path,
                "remote_id": obj.remote_id,
                "size": obj.size,
                "modified_at": obj.modified_at.isoformat() if obj.modified_at else None,
            }
            for obj in matching
        ]
        return SourceTestResult(ok=True, files=files)

    async def connection_status(self, user_id: str, source_id: Optional[str]) -> dict[str, bool]:
        source = await self._get_source(source_id)
        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_member(self._authorization, user_id, source.tenant_id)

        if not SourceProvider(source.provider).is_cloud_drive:
            return {"connected": True}

        secrets = await self._get_secrets(source.id)
        return {"connected": bool(secrets.get("refresh_token"))}

    async def disconnect(self, user_id: str, source_id: Optional[str]) -> dict[str, bool]:
        source = await self._get_source(source_id)
        await require_admin(self._authorization, user_id, source.tenant_id)

        async with store_errors():
            async with self._session_factory.begin() as session:
                await SourceSecretRepository(session, self.secret_box).put(source.id, {})

        logger.info(f"Disconnected source {source.id}")
        return {"ok": True}

    # =========================================================================
    # Cloud drive browsing and direct import
    # =========================================================================

    async def _call_connector(self, awaitable: Awaitable[T], what: str) -> T:
        timeout = self.settings.connector_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectorError(f"{what} timed out after {timeout:g}s") from e

    async def _store_rotated(self, source_id: str, previous: dict[str, Any], current: dict[str, Any]) -> None:
        if current == previous:
            return
        async with store_errors():
            async with self._session_factory.begin() as session:
                await SourceSecretRepository(session, self.secret_box).put(source_id, current)
        logger.info(f"Persisted rotated credentials for source {source_id}")

    def _require_cloud(self, source: Source, message: str) -> SourceProvider:
        provider = SourceProvider(source.provider)
        if not provider.is_cloud_drive:
            raise InvalidRequestError(message)
        return provider

    async def browse_folders(
        self,
        user_id: str,
        source_id: Optional[str],
        parent_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """List subfolders and the first files of a drive folder for the folder picker."""
        source = await self._get_source(source_id)
        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_admin(self._authorization, user_id, source.tenant_id)
        provider = self._require_cloud(source, "Folder picker only supported for cloud providers")

        parent = parent_id or "root"
        secrets = await self._get_secrets(source.id)

        try:
            config = load_source_config(provider, source.config)
            async with self.connectors.build(provider, config) as connector:
                listing = await self._call_connector(
                    connector.browse(secrets, parent, file_limit=FOLDER_PICKER_FILE_LIMIT),
                    f"{provider.value} folder listing",
                )
        except (ConfigurationError, ConnectorError) as e:
            raise InvalidRequestError(e.message) from e

        await self._store_rotated(source.id, secrets, listing.credential.secrets)

        return {
            "parent_id": listing.parent_id,
            "folders": [{"id": f.id, "name": f.name} for f in listing.folders],
            "files": [
                {
                    "id": obj.remote_id,
                    "name": obj.name,
                    "size": obj.size,
                    "modified_at": obj.modified_at.isoformat() if obj.modified_at else None,
                }
                for obj in listing.files
            ],
        }

    async def whoami(self, user_id: str, source_id: Optional[str]) -> dict[str, Any]:
        """Connected account and configured folder of a cloud drive source."""
        source = await self._get_source(source_id)
        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_admin(self._authorization, user_id, source.tenant_id)
        provider = self._require_cloud(source, "Account lookup only supported for cloud providers")

        folder_id = (source.config or {}).get("folder_id")
        secrets = await self._get_secrets(source.id)
        if not secrets.get("refresh_token"):
            return {"provider": provider.value, "connected": False, "folder_id": folder_id}

        try:
            config = load_source_config(provider, source.config)
            async with self.connectors.build(provider, config) as connector:
                credential = await self._call_connector(
                    connector.authorize(secrets), f"{provider.value} authorization"
                )
                account = await self._call_connector(connector.account(credential), "Account lookup")
                try:
                    folder_name = await self._call_connector(
                        connector.item_name(credential, config.folder_id), "Folder lookup"
                    )
                except ConnectorError as e:
                    logger.debug(f"Folder name unavailable for source {source.id}: {e.message}")
                    folder_name = None
        except (ConfigurationError, ConnectorError) as e:
            raise InvalidRequestError(e.message) from e

        await self._store_rotated(source.id, secrets, credential.secrets)

        return {
            "provider": provider.value,
            "connected": True,
            "account": {"email": account.email, "display_name": account.display_name},
            "folder_id": folder_id,
            "folder_name": folder_name,
        }

    async def import_files(
        self,
        user_id: str,
        source_id: Optional[str],
        files: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """
        Import hand-picked drive files, bypassing the glob and run limit.

        Files already in the ledger are skipped. A failing file is reported
        and the remaining files are still attempted.
        """
        source = await self._get_source(source_id)
        await require_admin(self._authorization, user_id, source.tenant_id)
        provider = self._require_cloud(source, "Direct import only supported for cloud providers")

        if not files:
            return {"ok": True, "inserted": 0, "results": []}
        if self.import_pipeline is None:
            raise ConfigurationError("Import pipeline is not configured")

        try:
            config = load_source_config(provider, source.config)
        except ConfigurationError as e:
            raise InvalidRequestError(e.message) from e

        secrets = await self._get_secrets(source.id)
        results: list[dict[str, Any]] = []

        async with self.connectors.build(provider, config) as connector:
            try:
                credential = await self._call_connector(
                    connector.authorize(secrets), f"{provider.value} authorization"
                )
            except (ConfigurationError, ConnectorError) as e:
                raise InvalidRequestError(e.message) from e

            await self._store_rotated(source.id, secrets, credential.secrets)

            for item in files:
                results.append(await self._import_file(source, config, connector, credential, item))

        inserted = sum(1 for r in results if r["status"] == ImportStatus.IMPORTED.value)
        logger.info(f"Imported {inserted} of {len(files)} picked file(s) for source {source.id}")
        return {"ok": True, "inserted": inserted, "results": results}

    async def _import_file(
        self,
        source: Source,
        config: SourceConfig,
        connector: SourceConnector,
        credential: AccessCredential,
        item: dict[str, Any],
    ) -> dict[str, Any]:
        remote = RemoteObject(name=item.get("name") or item["id"], remote_id=item["id"])

        async with store_errors():
            async with self._session_factory() as session:
                if await LedgerRepository(session).exists(source.id, remote_id=remote.remote_id):
                    return {"id": remote.remote_id, "status": ImportStatus.SKIPPED.value}

        try:
            fetched = await self._call_connector(
                connector.download(remote, credential), f"Download of {remote.name}"
            )
            document = await self.import_pipeline.import_fetched_file(
                tenant_id=source.tenant_id,
                fetched=fetched,
                config=config,
                source_id=source.id,
            )
            async with store_errors():
                async with self._session_factory.begin() as session:
                    await LedgerRepository(session).record(
                        tenant_id=source.tenant_id,
                        source_id=source.id,
                        imported_document_id=document.document_id,
                        remote_id=remote.remote_id,
                    )
        except LedgerConflictError:
            return {"id": remote.remote_id, "status": ImportStatus.SKIPPED.value}
        except InfrastructureError:
            raise
        except SyncError as e:
            logger.warning(f"Import of {remote.remote_id} for source {source.id} failed: {e.message}")
            return {"id": remote.remote_id, "status": ImportStatus.ERROR.value, "message": e.message}

        return {
            "id": remote.remote_id,
            "status": ImportStatus.IMPORTED.value,
            "document_id": document.document_id,
        }

    # =========================================================================
    # Tenant cron settings
    # =========================================================================

    async def get_cron_settings(self, user_id: str, tenant_id: Optional[str]) -> dict[str, Any]:
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        await require_admin(self._authorization, user_id, tenant_id)

        async with store_errors():
            async with self._session_factory() as session:
                row = await CronSecretRepository(session).get(tenant_id)

        if row is None:
            return {
                "configured": False,
                "enabled": False,
                "default_run_limit": self.settings.cron.default_run_limit,
                "key_prefix": None,
                "updated_at": None,
            }
        return {
            "configured": True,
            "enabled": bool(row.enabled),
            "default_run_limit": row.default_run_limit,
            "key_prefix": row.key_prefix,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }

    async def update_cron_settings(
        self,
        user_id: str,
        tenant_id: Optional[str],
        enabled: Optional[bool] = None,
        default_run_limit: Optional[int] = None,
    ) -> dict[str, bool]:
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        await require_admin(self._authorization, user_id, tenant_id)

        limit = None
        if default_run_limit is not None:
            limit = self.settings.clamp_run_limit(default_run_limit)

        async with store_errors():
            async with self._session_factory.begin() as session:
                row = await CronSecretRepository(session).update_settings(
                    tenant_id, enabled=enabled, default_run_limit=limit
                )

        if row is None:
            raise InvalidRequestError(CRON_NOT_CONFIGURED)
        return {"ok": True}

    async def rotate_cron_key(self, user_id: str, tenant_id: Optional[str]) -> dict[str, str]:
        """Issue a new tenant cron key; the plaintext is returned only here."""
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_admin(self._authorization, user_id, tenant_id)

        key, prefix = generate_cron_key()
        key_hash = CronKeyVerifier(self.settings.cron.key_pepper).hash(key)

        async with store_errors():
            async with self._session_factory.begin() as session:
                await CronSecretRepository(session).rotate(
                    tenant_id,
                    key_prefix=prefix,
                    key_hash=key_hash,
                    default_run_limit=self.settings.cron.default_run_limit,
                )

        return {"cron_secret": key, "key_prefix": prefix}
