"""
Tests for API Middleware
========================
Tests for session token handling and the session middleware.
"""

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from ...config import SessionAuthConfig
from ..middleware.auth import (
    AuthenticatedUser,
    SessionAuthMiddleware,
    SessionTokenHandler,
    get_authenticated_user,
)


@pytest.fixture
def session_config() -> SessionAuthConfig:
    return SessionAuthConfig(secret_key="session-secret", issuer="ledgerai", audience="ledgerai-api")


# =============================================================================
# Token Handler Tests
# =============================================================================

class TestSessionTokenHandler:
    """Tests for session token decoding."""

    @pytest.fixture
    def handler(self, session_config):
        return SessionTokenHandler(session_config)

    def test_decode_valid_token(self, handler):
        token = handler.create_token("user-1", email="user@example.com")

        user = handler.decode(token)

        assert user.id == "user-1"
        assert user.email == "user@example.com"
        assert user.token_exp is not None

    def test_decode_expired_token(self, handler):
        token = handler.create_token("user-1", expires_minutes=-1)

        assert handler.decode(token) is None

    def test_decode_wrong_audience(self, handler, session_config):
        other = SessionTokenHandler(session_config.model_copy(update={"audience": "other-api"}))

        assert handler.decode(other.create_token("user-1")) is None

    def test_decode_tampered_token(self, handler):
        token = handler.create_token("user-1")

        assert handler.decode(token[:-2] + "xx") is None

    def test_token_without_subject(self, handler, session_config):
        token = jwt.encode(
            {"iss": session_config.issuer, "aud": session_config.audience},
            session_config.secret_key,
            algorithm=session_config.algorithm,
        )

        assert handler.decode(token) is None


# =============================================================================
# Middleware Tests
# =============================================================================

class TestSessionAuthMiddleware:
    """Tests for attaching the session user to requests."""

    @pytest.fixture
    def client(self, session_config):
        app = FastAPI()
        app.add_middleware(SessionAuthMiddleware, config=session_config)

        @app.get("/me")
        async def me(user: AuthenticatedUser = Depends(get_authenticated_user)):
            return {"id": user.id}

        return TestClient(app)

    def test_bearer_token(self, client, session_config):
        token = SessionTokenHandler(session_config).create_token("user-1")

        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json() == {"id": "user-1"}

    def test_session_cookie(self, client, session_config):
        token = SessionTokenHandler(session_config).create_token("user-2")
        client.cookies.set(session_config.cookie_name, token)

        response = client.get("/me")

        assert response.json() == {"id": "user-2"}

    def test_missing_token(self, client):
        assert client.get("/me").status_code == 401

    def test_invalid_token_not_rejected_by_middleware(self, client):
        response = client.get("/me", headers={"Authorization": "Bearer garbage"})

        # The dependency rejects, not the middleware
        assert response.status_code == 401
