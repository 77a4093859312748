"""
Cron Secret Repository
======================
Per-tenant cron key hashes and automation settings.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import utcnow
from ..models.cron_secret import TenantCronSecret

logger = logging.getLogger(__name__)


class CronSecretRepository:
    """Repository for tenant cron secrets."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str) -> Optional[TenantCronSecret]:
        result = await self.session.execute(
            select(TenantCronSecret).where(TenantCronSecret.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def rotate(
        self,
        tenant_id: str,
        key_prefix: str,
        key_hash: str,
        default_run_limit: int = 10,
    ) -> TenantCronSecret:
        """Replace the tenant's key hash and re-enable automation."""
        row = await self.get(tenant_id)
        if row is None:
            row = TenantCronSecret(tenant_id=tenant_id)
            self.session.add(row)

        row.key_prefix = key_prefix
        row.key_hash = key_hash
        row.enabled = True
        row.default_run_limit = default_run_limit
        row.updated_at = utcnow()

        await self.session.flush()
        logger.info(f"Rotated cron key for tenant {tenant_id} (prefix {key_prefix})")
        return row

    async def update_settings(
        self,
        tenant_id: str,
        enabled: Optional[bool] = None,
        default_run_limit: Optional[int] = None,
    ) -> Optional[TenantCronSecret]:
        """Patch settings; returns None when no key has been generated yet."""
        row = await self.get(tenant_id)
        if row is None:
            return None

        changed = False
        if enabled is not None:
            row.enabled = enabled
            changed = True
        if default_run_limit is not None:
            row.default_run_limit = default_run_limit
            changed = True

        if changed:
            row.updated_at = utcnow()
            await self.session.flush()
        return row
