"""
Authorization
=============
Tenant membership, admin role and plan feature checks.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

from ..exceptions import AuthorizationError

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"COMPANY_ADMIN", "SUPER_ADMIN"})

FEATURE_DENIED_MESSAGE = "AI automation is not available on your plan"


@runtime_checkable
class AuthorizationStore(Protocol):
    """Lookup of tenant roles and plan entitlements, owned by the host platform."""

    async def resolve_role(self, user_id: str, tenant_id: str) -> Optional[str]:
        """Role of the user in the tenant, or None if not a member."""
        ...

    async def has_feature(self, user_id: str, feature_key: str) -> bool:
        """Whether the user's plan includes the feature."""
        ...


class InMemoryAuthorizationStore:
    """
    Dictionary-backed authorization store.

    Used for local development and tests; production deployments supply an
    implementation backed by the platform's membership tables.
    """

    def __init__(self):
        self._roles: dict[tuple[str, str], str] = {}  # (user_id, tenant_id) -> role
        self._features: dict[str, set[str]] = {}  # user_id -> feature keys

    def assign_role(self, user_id: str, tenant_id: str, role: str) -> None:
        self._roles[(user_id, tenant_id)] = role

    def revoke_role(self, user_id: str, tenant_id: str) -> None:
        self._roles.pop((user_id, tenant_id), None)

    def grant_feature(self, user_id: str, feature_key: str) -> None:
        self._features.setdefault(user_id, set()).add(feature_key)

    def revoke_feature(self, user_id: str, feature_key: str) -> None:
        self._features.get(user_id, set()).discard(feature_key)

    async def resolve_role(self, user_id: str, tenant_id: str) -> Optional[str]:
        return self._roles.get((user_id, tenant_id))

    async def has_feature(self, user_id: str, feature_key: str) -> bool:
        return feature_key in self._features.get(user_id, set())


def is_admin_role(role: Optional[str]) -> bool:
    return role in ADMIN_ROLES


async def require_feature(store: AuthorizationStore, user_id: str, feature_key: str) -> None:
    if not await store.has_feature(user_id, feature_key):
        logger.info(f"User {user_id} lacks feature {feature_key}")
        raise AuthorizationError(FEATURE_DENIED_MESSAGE)


async def require_member(store: AuthorizationStore, user_id: str, tenant_id: str) -> str:
    """Return the user's role, raising if the user is not in the tenant."""
    role = await store.resolve_role(user_id, tenant_id)
    if not role:
        raise AuthorizationError("Forbidden")
    return role


async def require_admin(store: AuthorizationStore, user_id: str, tenant_id: str) -> str:
    role = await store.resolve_role(user_id, tenant_id)
    if not is_admin_role(role):
        logger.info(f"User {user_id} is not an admin of tenant {tenant_id}")
        raise AuthorizationError("Forbidden")
    return role
