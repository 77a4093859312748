"""
Ledger Repository
=================
Append-only record of imported remote objects.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import LedgerConflictError
from ..models.base import utcnow
from ..models.sync_run import ItemLedgerEntry

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: IntegrityError) -> bool:
    """True when the failed statement hit a unique constraint."""
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    if code:
        return code == UNIQUE_VIOLATION
    return "unique" in str(error.orig).lower()


class LedgerRepository:
    """Repository for item ledger operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(
        self,
        source_id: str,
        remote_path: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> bool:
        """Check whether a remote object was already imported."""
        if (remote_path is None) == (remote_id is None):
            raise ValueError("Exactly one of remote_path or remote_id is required")

        query = select(ItemLedgerEntry.id).where(ItemLedgerEntry.source_id == source_id)
        if remote_id is not None:
            query = query.where(ItemLedgerEntry.remote_id == remote_id)
        else:
            query = query.where(ItemLedgerEntry.remote_path == remote_path)

        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def record(
        self,
        tenant_id: str,
        source_id: str,
        imported_document_id: str,
        remote_path: Optional[str] = None,
        remote_id: Optional[str] = None,
        remote_modified_at: Optional[datetime] = None,
        remote_size: Optional[int] = None,
    ) -> ItemLedgerEntry:
        """
        Insert a ledger entry.

        Raises LedgerConflictError if the identity is already recorded; the
        caller's transaction must then be rolled back. Other integrity
        failures propagate unchanged.
        """
        if (remote_path is None) == (remote_id is None):
            raise ValueError("Exactly one of remote_path or remote_id is required")

        entry = ItemLedgerEntry(
            tenant_id=tenant_id,
            source_id=source_id,
            remote_path=remote_path,
            remote_id=remote_id,
            remote_modified_at=remote_modified_at,
            remote_size=remote_size,
            imported_document_id=imported_document_id,
            imported_at=utcnow(),
        )

        self.session.add(entry)
        try:
            await self.session.flush()
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            identity = remote_id if remote_id is not None else remote_path
            raise LedgerConflictError(f"{identity} already recorded for source {source_id}") from e

        return entry

    async def count(self, source_id: str) -> int:
        """Number of entries recorded for a source."""
        result = await self.session.execute(
            select(func.count()).select_from(ItemLedgerEntry).where(ItemLedgerEntry.source_id == source_id)
        )
        return result.scalar_one()
