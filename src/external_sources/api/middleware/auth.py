"""
Session Authentication Middleware
=================================
Decodes the platform session JWT and attaches the user to the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, TYPE_CHECKING

import jwt
from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

if TYPE_CHECKING:
    from starlette.types import ASGIApp

from ...config import SessionAuthConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class AuthenticatedUser:
    """Authenticated session user."""
    id: str
    email: Optional[str] = None
    token_exp: Optional[datetime] = None


# =============================================================================
# JWT Utilities
# =============================================================================

class SessionTokenHandler:
    """Session token encode/decode with PyJWT."""

    def __init__(self, config: SessionAuthConfig):
        self.config = config

    def create_token(self, user_id: str, email: Optional[str] = None, expires_minutes: int = 30) -> str:
        """Create a session token (used by tests and local tooling)."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "iat": now,
            "exp": now + timedelta(minutes=expires_minutes),
            "iss": self.config.issuer,
            "aud": self.config.audience,
        }
        return jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)

    def decode(self, token: str) -> Optional[AuthenticatedUser]:
        """Decode a token; returns None when it is invalid or expired."""
        try:
            payload = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                audience=self.config.audience,
                issuer=self.config.issuer,
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Session token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug(f"Invalid session token: {e}")
            return None

        user_id = payload.get("sub")
        if not user_id:
            return None

        exp = payload.get("exp")
        return AuthenticatedUser(
            id=str(user_id),
            email=payload.get("email"),
            token_exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


# =============================================================================
# Authentication Middleware
# =============================================================================

class SessionAuthMiddleware(BaseHTTPMiddleware):
    """
    Attaches ``request.state.user`` from a bearer token or session cookie.

    Never rejects a request: the run endpoint also accepts cron secrets, so
    routes decide through the dependencies below.
    """

    def __init__(self, app: "ASGIApp", config: Optional[SessionAuthConfig] = None):
        super().__init__(app)
        self.config = config or SessionAuthConfig()
        self.tokens = SessionTokenHandler(self.config)

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        request.state.user = None

        token = self._extract_token(request)
        if token:
            request.state.user = self.tokens.decode(token)

        return await call_next(request)

    def _extract_token(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("Authorization")
        if auth_header:
            scheme, _, value = auth_header.partition(" ")
            if scheme.lower() == "bearer" and value:
                return value.strip()
        return request.cookies.get(self.config.cookie_name)


# =============================================================================
# Dependencies
# =============================================================================

async def get_authenticated_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency to get the authenticated user.

    Usage:
        @router.get("/status")
        async def status(user: AuthenticatedUser = Depends(get_authenticated_user)):
            ...
    """
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    """Returns None if not authenticated (doesn't raise)."""
    return getattr(request.state, "user", None)
