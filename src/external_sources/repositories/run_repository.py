"""
Run Repository
==============
Opens, closes and reconciles per-source run records.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import utcnow
from ..models.sync_run import RunStatus, SourceRun

logger = logging.getLogger(__name__)


class RunRepository:
    """Repository for run records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def open(self, tenant_id: str, source_id: str) -> SourceRun:
        """Create a RUNNING run."""
        run = SourceRun(
            tenant_id=tenant_id,
            source_id=source_id,
            status=RunStatus.RUNNING,
            started_at=utcnow(),
            inserted_count=0,
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def close(
        self,
        run_id: str,
        status: RunStatus,
        inserted_count: int = 0,
        message: Optional[str] = None,
    ) -> bool:
        """
        Move a RUNNING run to a terminal status.

        Returns False if the run was already closed.
        """
        if status == RunStatus.RUNNING:
            raise ValueError("Cannot close a run as RUNNING")

        stmt = (
            update(SourceRun)
            .where(SourceRun.id == run_id)
            .where(SourceRun.status == RunStatus.RUNNING)
            .values(
                status=status,
                finished_at=utcnow(),
                inserted_count=inserted_count,
                message=message,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def close_stale(self, started_before: datetime, message: str) -> int:
        """Close RUNNING runs started before the cutoff as ERROR."""
        stmt = (
            update(SourceRun)
            .where(SourceRun.status == RunStatus.RUNNING)
            .where(SourceRun.started_at < started_before)
            .values(status=RunStatus.ERROR, finished_at=utcnow(), message=message)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def get(self, run_id: str) -> Optional[SourceRun]:
        result = await self.session.execute(select(SourceRun).where(SourceRun.id == run_id))
        return result.scalar_one_or_none()

    async def list_for_source(self, source_id: str, limit: int = 20) -> list[SourceRun]:
        """Most recent runs first."""
        query = (
            select(SourceRun)
            .where(SourceRun.source_id == source_id)
            .order_by(SourceRun.started_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())
