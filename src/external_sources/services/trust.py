"""
Trust Tier Resolution
=====================
Decides who is triggering a sync: the platform scheduler, a tenant-owned
scheduler, or an interactive admin.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SyncSettings
from ..database import store_errors
from ..exceptions import AuthenticationError, InvalidRequestError
from ..repositories.cron_secret_repository import CronSecretRepository
from ..security.cron_keys import CronKeyVerifier
from .authorization import AuthorizationStore, require_admin, require_feature

logger = logging.getLogger(__name__)


class TrustTier(str, Enum):
    GLOBAL = "global"
    TENANT = "tenant"
    INTERACTIVE = "interactive"

    @property
    def is_automation(self) -> bool:
        return self in (TrustTier.GLOBAL, TrustTier.TENANT)


@dataclass
class CallerCredentials:
    """What the caller presented: a cron secret header and/or a session user."""
    cron_secret: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class CallerContext:
    """Resolved caller. ``tenant_id`` is None only for an unfiltered global run."""
    tier: TrustTier
    tenant_id: Optional[str]
    user_id: Optional[str] = None
    cron_enabled: bool = True
    default_run_limit: Optional[int] = None


class TrustResolver:
    """Resolves trigger credentials to a trust tier, first match wins."""

    def __init__(
        self,
        settings: SyncSettings,
        session_factory: async_sessionmaker[AsyncSession],
        authorization: AuthorizationStore,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._authorization = authorization
        self._verifier = CronKeyVerifier(settings.cron.key_pepper)

    def _is_global_secret(self, presented: str) -> bool:
        expected = self.settings.cron.global_secret
        if not expected:
            return False
        return hmac.compare_digest(presented.encode(), expected.encode())

    async def resolve(self, credentials: CallerCredentials, tenant_id: Optional[str]) -> CallerContext:
        presented = credentials.cron_secret

        if presented:
            if self._is_global_secret(presented):
                logger.info(f"Trigger authenticated with global cron secret (tenant filter: {tenant_id})")
                return CallerContext(tier=TrustTier.GLOBAL, tenant_id=tenant_id)

            if not tenant_id:
                raise InvalidRequestError("tenant_id is required")

            context = await self._resolve_tenant_secret(presented, tenant_id)
            if context is not None:
                return context

            if not credentials.user_id:
                raise AuthenticationError("Unauthorized")
            logger.debug(f"Cron secret rejected for tenant {tenant_id}, falling back to session")

        if credentials.user_id:
            return await self._resolve_interactive(credentials.user_id, tenant_id)

        raise AuthenticationError("Unauthorized")

    async def _resolve_tenant_secret(self, presented: str, tenant_id: str) -> Optional[CallerContext]:
        async with store_errors():
            async with self._session_factory() as session:
                row = await CronSecretRepository(session).get(tenant_id)

        if row is None or not self._verifier.verify(presented, row.key_hash):
            logger.warning(f"Invalid tenant cron secret presented for tenant {tenant_id}")
            return None

        logger.info(f"Trigger authenticated with tenant cron key {row.key_prefix} for tenant {tenant_id}")
        return CallerContext(
            tier=TrustTier.TENANT,
            tenant_id=tenant_id,
            cron_enabled=bool(row.enabled),
            default_run_limit=self.settings.clamp_run_limit(row.default_run_limit),
        )

    async def _resolve_interactive(self, user_id: str, tenant_id: Optional[str]) -> CallerContext:
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")

        await require_feature(self._authorization, user_id, self.settings.feature_key)
        await require_admin(self._authorization, user_id, tenant_id)

        return CallerContext(tier=TrustTier.INTERACTIVE, tenant_id=tenant_id, user_id=user_id)
