"""API middleware."""

from .auth import (
    AuthenticatedUser,
    SessionAuthMiddleware,
    SessionTokenHandler,
    get_authenticated_user,
    get_optional_user,
)
from .request_context import RequestContextMiddleware

__all__ = [
    "AuthenticatedUser",
    "SessionAuthMiddleware",
    "SessionTokenHandler",
    "get_authenticated_user",
    "get_optional_user",
    "RequestContextMiddleware",
]
