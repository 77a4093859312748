"""
Source Repository
=================
Tenant-scoped source queries, the run claim, and encrypted secret storage.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import utcnow
from ..models.provider_config import SourceProvider
from ..models.source import Source, SourceSecret
from ..models.sync_run import RunStatus, SourceRun
from ..security.secret_box import EncryptedBlob, SecretBox

logger = logging.getLogger(__name__)


class SourceRepository:
    """Repository for source operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, source_id: str, tenant_id: Optional[str] = None) -> Optional[Source]:
        """Get source by ID, optionally scoped to a tenant."""
        query = select(Source).where(Source.id == source_id)
        if tenant_id is not None:
            query = query.where(Source.tenant_id == tenant_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str) -> list[Source]:
        """All sources of a tenant, newest first."""
        query = (
            select(Source)
            .where(Source.tenant_id == tenant_id)
            .order_by(Source.created_at.desc(), Source.id)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_enabled(
        self,
        tenant_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> list[Source]:
        """Enabled sources in a stable order, filtered by tenant and/or id."""
        query = select(Source).where(Source.enabled.is_(True))

        if tenant_id is not None:
            query = query.where(Source.tenant_id == tenant_id)
        if source_id is not None:
            query = query.where(Source.id == source_id)

        query = query.order_by(Source.created_at, Source.id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def upsert(
        self,
        tenant_id: str,
        name: str,
        provider: SourceProvider,
        enabled: bool,
        schedule_minutes: int,
        config: dict[str, Any],
        created_by: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Source:
        """Create a source, or update it when ``source_id`` names an existing one."""
        source = await self.get(source_id, tenant_id=tenant_id) if source_id else None

        if source is None:
            source = Source(
                tenant_id=tenant_id,
                created_by=created_by,
            )
            if source_id:
                source.id = source_id
            self.session.add(source)

        source.name = name
        source.provider = provider
        source.enabled = enabled
        source.schedule_minutes = schedule_minutes
        source.config = config

        await self.session.flush()
        logger.info(f"Saved source {source.id} ({provider.value}) for tenant {tenant_id}")
        return source

    async def claim(
        self,
        source_id: str,
        observed_last_run_at: Optional[datetime],
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """
        Compare-and-set claim on ``last_run_at``.

        Succeeds only if ``last_run_at`` still equals the value observed when
        the source was selected and no live RUNNING run exists for it. Callers
        open the Run in the same transaction so a later reader sees it.
        """
        if observed_last_run_at is None:
            snapshot_matches = Source.last_run_at.is_(None)
        else:
            snapshot_matches = Source.last_run_at == observed_last_run_at

        live_run = exists().where(and_(
            SourceRun.source_id == source_id,
            SourceRun.status == RunStatus.RUNNING,
            SourceRun.started_at >= stale_before,
        ))

        stmt = (
            update(Source)
            .where(Source.id == source_id)
            .where(snapshot_matches)
            .where(~live_run)
            .values(last_run_at=now)
            .execution_options(synchronize_session=False)
        )

        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def touch_last_run(self, source_id: str, when: Optional[datetime] = None) -> None:
        """Record the end of a run attempt."""
        stmt = (
            update(Source)
            .where(Source.id == source_id)
            .values(last_run_at=when or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)


class SourceSecretRepository:
    """Encrypted credential blobs keyed by source id."""

    def __init__(self, session: AsyncSession, secret_box: SecretBox):
        self.session = session
        self.secret_box = secret_box

    async def get(self, source_id: str) -> dict[str, Any]:
        """Decrypted secrets for a source, or an empty dict."""
        result = await self.session.execute(
            select(SourceSecret).where(SourceSecret.source_id == source_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return {}

        blob = EncryptedBlob(key_id=row.key_id, iv=row.iv, ciphertext=row.ciphertext)
        return self.secret_box.decrypt(blob, associated_data=source_id)

    async def put(self, source_id: str, secrets: dict[str, Any]) -> None:
        """Replace the whole secret blob for a source."""
        blob = self.secret_box.encrypt(secrets, associated_data=source_id)

        result = await self.session.execute(
            select(SourceSecret).where(SourceSecret.source_id == source_id)
        )
        row = result.scalar_one_or_none()

        if row is None:
            row = SourceSecret(source_id=source_id)
            self.session.add(row)

        row.key_id = blob.key_id
        row.iv = blob.iv
        row.ciphertext = blob.ciphertext
        row.updated_at = utcnow()

        await self.session.flush()
        logger.debug(f"Stored secrets for source {source_id}")
