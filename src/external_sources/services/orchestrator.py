"""
Run Orchestrator
================
Claims due sources, polls their connectors and imports files not yet in
the ledger, recording one Run per source per invocation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SyncSettings
from ..connectors.base import AccessCredential, RemoteObject, SourceConnector, select_candidates
from ..connectors.registry import ConnectorRegistry
from ..database import store_errors
from ..exceptions import ConnectorError, LedgerConflictError
from ..models.base import utcnow
from ..models.provider_config import SourceConfig, SourceProvider, load_source_config
from ..models.source import Source
from ..models.sync_run import RunStatus
from ..repositories.ledger_repository import LedgerRepository
from ..repositories.run_repository import RunRepository
from ..repositories.source_repository import SourceRepository, SourceSecretRepository
from ..security.secret_box import SecretBox
from .authorization import AuthorizationStore
from .import_pipeline import ImportPipeline
from .trust import CallerContext, CallerCredentials, TrustResolver, TrustTier

logger = logging.getLogger(__name__)

T = TypeVar("T")

STALE_RUN_MESSAGE = "Run did not finish (marked stale)"


class SourceStatus(str, Enum):
    """Outcome of one source within an invocation."""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


@dataclass
class TriggerRequest:
    tenant_id: Optional[str] = None
    source_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class SourceResult:
    source_id: str
    status: SourceStatus
    inserted: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"source_id": self.source_id, "status": self.status.value}
        if self.inserted is not None:
            data["inserted"] = self.inserted
        if self.message is not None:
            data["message"] = self.message
        return data


@dataclass
class TriggerResult:
    ok: bool = True
    inserted_total: int = 0
    results: list[SourceResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "inserted_total": self.inserted_total,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SourceSnapshot:
    """Detached view of a source as observed when the invocation started."""
    id: str
    tenant_id: str
    provider: SourceProvider
    schedule_minutes: int
    last_run_at: Optional[datetime]
    config: dict[str, Any]

    @classmethod
    def from_model(cls, source: Source) -> "SourceSnapshot":
        return cls(
            id=source.id,
            tenant_id=source.tenant_id,
            provider=SourceProvider(source.provider),
            schedule_minutes=source.schedule_minutes,
            last_run_at=source.last_run_at,
            config=dict(source.config or {}),
        )


@dataclass
class _RunProgress:
    inserted: int = 0


class SyncOrchestrator:
    """
    Entry point for sync invocations.

    Every database step runs in its own short transaction so a Run's RUNNING
    state and each ledger entry become visible to other instances at once.
    """

    def __init__(
        self,
        settings: SyncSettings,
        session_factory: async_sessionmaker[AsyncSession],
        connectors: ConnectorRegistry,
        import_pipeline: ImportPipeline,
        authorization: AuthorizationStore,
        secret_box: SecretBox,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self.connectors = connectors
        self.import_pipeline = import_pipeline
        self.secret_box = secret_box
        self.trust = TrustResolver(settings, session_factory, authorization)

    async def trigger(self, request: TriggerRequest, credentials: CallerCredentials) -> TriggerResult:
        """Authenticate the caller, then sync every eligible source."""
        context = await self.trust.resolve(credentials, request.tenant_id)
        limit = self.settings.clamp_run_limit(request.limit, default=context.default_run_limit)

        sources = await self._prepare(context, request.source_id)
        logger.info(
            f"Sync triggered ({context.tier.value}) tenant={context.tenant_id} "
            f"sources={len(sources)} limit={limit}"
        )

        if self.settings.max_concurrent_sources > 1 and len(sources) > 1:
            semaphore = asyncio.Semaphore(self.settings.max_concurrent_sources)

            async def bounded(source: SourceSnapshot) -> SourceResult:
                async with semaphore:
                    return await self._process_source(context, source, limit)

            tasks = [asyncio.ensure_future(bounded(s)) for s in sources]
            try:
                results = list(await asyncio.gather(*tasks))
            except BaseException:
                # Siblings must close their runs before the failure propagates
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        else:
            results = []
            for source in sources:
                results.append(await self._process_source(context, source, limit))

        # Files imported before a source failed are still counted
        inserted_total = sum(r.inserted or 0 for r in results)
        return TriggerResult(ok=True, inserted_total=inserted_total, results=results)

    async def _prepare(self, context: CallerContext, source_id: Optional[str]) -> list[SourceSnapshot]:
        """Close stale runs and load enabled sources in scope."""
        stale_before = utcnow() - timedelta(minutes=self.settings.stale_run_minutes)

        async with store_errors():
            async with self._session_factory.begin() as session:
                closed = await RunRepository(session).close_stale(stale_before, STALE_RUN_MESSAGE)
                sources = await SourceRepository(session).list_enabled(
                    tenant_id=context.tenant_id,
                    source_id=source_id,
                )
                snapshots = [SourceSnapshot.from_model(s) for s in sources]

        if closed:
            logger.warning(f"Closed {closed} stale run(s) older than {self.settings.stale_run_minutes} minutes")
        return snapshots

    def _gate(self, context: CallerContext, source: SourceSnapshot, now: datetime) -> Optional[str]:
        """Reason to skip the source before claiming it, if any."""
        if context.tier == TrustTier.TENANT and not context.cron_enabled:
            return "Tenant cron disabled"

        if context.tier.is_automation and source.last_run_at is not None:
            if now - source.last_run_at < timedelta(minutes=source.schedule_minutes):
                return "Not due yet"

        return None

    async def _process_source(
        self,
        context: CallerContext,
        source: SourceSnapshot,
        limit: int,
    ) -> SourceResult:
        now = utcnow()

        reason = self._gate(context, source, now)
        if reason:
            logger.debug(f"Skipping source {source.id}: {reason}")
            return SourceResult(source_id=source.id, status=SourceStatus.SKIPPED, message=reason)

        run_id = await self._claim(source, now)
        if run_id is None:
            logger.debug(f"Skipping source {source.id}: already being synced")
            return SourceResult(source_id=source.id, status=SourceStatus.SKIPPED, message="Already being synced")

        progress = _RunProgress()
        try:
            await self._execute(source, limit, progress)
        except asyncio.CancelledError:
            logger.warning(f"Run {run_id} for source {source.id} cancelled")
            await self._finish(source.id, run_id, RunStatus.ERROR, progress.inserted, "Run cancelled")
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Source {source.id} ({source.provider.value}) failed: {message}")
            await self._finish(source.id, run_id, RunStatus.ERROR, progress.inserted, message)
            return SourceResult(
                source_id=source.id,
                status=SourceStatus.ERROR,
                inserted=progress.inserted,
                message=message,
            )

        message = f"Imported {progress.inserted} file(s)" if progress.inserted else "No new files"
        await self._finish(source.id, run_id, RunStatus.SUCCESS, progress.inserted, message)
        logger.info(f"Source {source.id}: {message}")
        return SourceResult(source_id=source.id, status=SourceStatus.SUCCESS, inserted=progress.inserted)

    async def _claim(self, source: SourceSnapshot, now: datetime) -> Optional[str]:
        """Claim the source and open its Run atomically. Returns the run id."""
        stale_before = now - timedelta(minutes=self.settings.stale_run_minutes)

        async with store_errors():
            async with self._session_factory.begin() as session:
                claimed = await SourceRepository(session).claim(
                    source.id,
                    observed_last_run_at=source.last_run_at,
                    now=now,
                    stale_before=stale_before,
                )
                if not claimed:
                    return None
                run = await RunRepository(session).open(source.tenant_id, source.id)
                return run.id

    async def _finish(
        self,
        source_id: str,
        run_id: str,
        status: RunStatus,
        inserted: int,
        message: Optional[str],
    ) -> None:
        async with store_errors():
            async with self._session_factory.begin() as session:
                await SourceRepository(session).touch_last_run(source_id, utcnow())
                closed = await RunRepository(session).close(run_id, status, inserted, message)
        if not closed:
            logger.warning(f"Run {run_id} was already closed before finishing as {status.value}")

    async def _execute(self, source: SourceSnapshot, limit: int, progress: _RunProgress) -> None:
        async with self._session_factory.begin() as session:
            secrets = await SourceSecretRepository(session, self.secret_box).get(source.id)

        config = load_source_config(source.provider, source.config)
        connector = self.connectors.build(source.provider, config)

        async with connector:
            listing = await self._with_timeout(
                connector.list(secrets),
                f"{source.provider.value} listing",
            )

            if listing.credential.secrets != secrets:
                await self._persist_rotated_secrets(source.id, listing.credential.secrets)

            candidates = select_candidates(listing.objects, config.file_glob, limit)
            logger.debug(
                f"Source {source.id}: {len(listing.objects)} listed, {len(candidates)} candidate(s)"
            )

            for obj in candidates:
                if await self._import_object(source, config, connector, listing.credential, obj):
                    progress.inserted += 1

    async def _import_object(
        self,
        source: SourceSnapshot,
        config: SourceConfig,
        connector: SourceConnector,
        credential: AccessCredential,
        obj: RemoteObject,
    ) -> bool:
        """Import one object unless the ledger already has it. Returns True if recorded."""
        identity = self._ledger_identity(obj)

        async with self._session_factory.begin() as session:
            if await LedgerRepository(session).exists(source.id, **identity):
                return False

        fetched = await self._with_timeout(
            connector.download(obj, credential),
            f"Download of {obj.name}",
        )
        document = await self.import_pipeline.import_fetched_file(
            tenant_id=source.tenant_id,
            fetched=fetched,
            config=config,
            source_id=source.id,
        )

        try:
            async with self._session_factory.begin() as session:
                await LedgerRepository(session).record(
                    tenant_id=source.tenant_id,
                    source_id=source.id,
                    imported_document_id=document.document_id,
                    remote_modified_at=obj.modified_at,
                    remote_size=obj.size,
                    **identity,
                )
        except LedgerConflictError:
            logger.info(f"{obj.identity} was recorded concurrently for source {source.id}, skipping")
            return False

        return True

    async def _persist_rotated_secrets(self, source_id: str, secrets: dict[str, Any]) -> None:
        async with self._session_factory.begin() as session:
            await SourceSecretRepository(session, self.secret_box).put(source_id, secrets)
        logger.info(f"Persisted rotated credentials for source {source_id}")

    @staticmethod
    def _ledger_identity(obj: RemoteObject) -> dict[str, str]:
        if obj.remote_id is not None:
            return {"remote_id": obj.remote_id}
        return {"remote_path": obj.remote_path}

    async def _with_timeout(self, awaitable: Awaitable[T], what: str) -> T:
        timeout = self.settings.connector_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectorError(f"{what} timed out after {timeout:g}s") from e
