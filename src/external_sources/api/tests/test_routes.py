"""
Tests for API Routes
====================
End-to-end tests of the external sources endpoints using TestClient.

The TestClient drives each request on its own event loop, so the engine uses
NullPool and never hands an aiosqlite connection across loops.
"""

import asyncio
import base64
import os
from collections import defaultdict
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ...config import (
    CronConfig,
    DatabaseConfig,
    EncryptionConfig,
    ImportPipelineConfig,
    OAuthClientConfig,
    OAuthConfig,
    SessionAuthConfig,
    SyncSettings,
)
from ...connectors.cloud_drive_connector import RemoteFolder
from ...connectors.registry import ConnectorRegistry
from ...database import MISSING_SCHEMA_HINT, create_schema, create_session_factory
from ...exceptions import ConnectorError
from ...models import SourceProvider
from ...services.authorization import InMemoryAuthorizationStore
from ...tests.fakes import (
    ADMIN_USER,
    CRON_PEPPER,
    GLOBAL_SECRET,
    MEMBER_USER,
    TENANT_A,
    FakeConnector,
    FakeImportPipeline,
    FakeRemote,
    remote_files,
)
from ..app import create_app
from ..config import APIConfig
from ..middleware.auth import SessionTokenHandler

PREFIX = "/api/external-sources"
CRON_HEADER = "x-ledgerai-cron-secret"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"),
        cron=CronConfig(global_secret=GLOBAL_SECRET, key_pepper=CRON_PEPPER),
        oauth=OAuthConfig(
            state_secret="state-secret-" + "x" * 32,
            site_url="https://app.example.com",
            google=OAuthClientConfig(client_id="google-client", client_secret="google-secret"),
            microsoft=OAuthClientConfig(client_id="ms-client", client_secret="ms-secret"),
        ),
        encryption=EncryptionConfig(
            master_key=base64.b64encode(os.urandom(32)).decode(),
            master_key_id="master-v1",
            retired_keys=[],
        ),
        session=SessionAuthConfig(secret_key="session-secret", issuer="ledgerai", audience="ledgerai-api"),
        import_pipeline=ImportPipelineConfig(endpoint_url=None, api_token=None),
        connector_timeout_seconds=5.0,
    )


@pytest.fixture
def engine(settings):
    """Engine with the sync schema installed."""
    engine = create_async_engine(settings.database.url, poolclass=NullPool)
    asyncio.run(create_schema(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def remotes() -> defaultdict:
    return defaultdict(FakeRemote)


@pytest.fixture
def token_responses() -> list:
    """Bodies returned by the fake OAuth token endpoint, last one repeats."""
    return [{"access_token": "at", "refresh_token": "rt", "expires_in": 3600}]


@pytest.fixture
def make_app(settings, remotes, token_responses):
    """Build an app around a given engine with fake collaborators."""
    authorization = InMemoryAuthorizationStore()
    authorization.assign_role(ADMIN_USER, TENANT_A, "COMPANY_ADMIN")
    authorization.grant_feature(ADMIN_USER, "ai_access")
    authorization.assign_role(MEMBER_USER, TENANT_A, "MEMBER")
    authorization.grant_feature(MEMBER_USER, "ai_access")

    connectors = ConnectorRegistry(settings)
    for provider in SourceProvider:
        connectors.register(
            provider,
            lambda config: FakeConnector(remotes[getattr(config, "host", None) or config.folder_id]),
        )

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        body = token_responses.pop(0) if len(token_responses) > 1 else token_responses[0]
        return httpx.Response(200, json=body)

    def factory(engine):
        return create_app(
            APIConfig(debug=True),
            settings=settings,
            session_factory=create_session_factory(engine),
            authorization=authorization,
            import_pipeline=FakeImportPipeline(),
            connectors=connectors,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)),
        )

    return factory


@pytest.fixture
def client(make_app, engine):
    """Create test client."""
    return TestClient(make_app(engine))


def session_headers(settings: SyncSettings, user_id: str) -> dict[str, str]:
    token = SessionTokenHandler(settings.session).create_token(user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(settings):
    return session_headers(settings, ADMIN_USER)


@pytest.fixture
def member_headers(settings):
    return session_headers(settings, MEMBER_USER)


@pytest.fixture
def sftp_source(client, admin_headers) -> str:
    """Create an SFTP source through the API; returns its id."""
    response = client.post(
        f"{PREFIX}/upsert",
        json={
            "tenant_id": TENANT_A,
            "name": "Bank SFTP",
            "provider": "SFTP",
            "config": {"host": "files.example.com", "remote_path": "/inbox"},
            "secrets": {"username": "u", "password": "p"},
        },
        headers=admin_headers,
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


@pytest.fixture
def drive_source(client, admin_headers) -> str:
    response = client.post(
        f"{PREFIX}/upsert",
        json={
            "tenant_id": TENANT_A,
            "name": "Scans",
            "provider": "GOOGLE_DRIVE",
            "config": {"folder_id": "drive-folder"},
        },
        headers=admin_headers,
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


# =============================================================================
# Health Endpoint Tests
# =============================================================================

class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


# =============================================================================
# Run Endpoint Tests
# =============================================================================

class TestRunEndpoint:
    """Tests for the trigger endpoint."""

    def test_requires_credentials(self, client):
        response = client.post(f"{PREFIX}/run", json={"tenant_id": TENANT_A})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_global_secret_imports_new_files(self, client, sftp_source, remotes):
        remotes["files.example.com"].objects = remote_files("a.pdf", "b.pdf")

        first = client.post(f"{PREFIX}/run", json={}, headers={CRON_HEADER: GLOBAL_SECRET})
        second = client.post(f"{PREFIX}/run", headers={CRON_HEADER: GLOBAL_SECRET})

        assert first.status_code == 200
        assert first.json()["ok"] is True
        assert first.json()["inserted_total"] == 2
        assert first.json()["results"] == [
            {"source_id": sftp_source, "status": "SUCCESS", "inserted": 2}
        ]
        assert second.json()["inserted_total"] == 0

    def test_tenant_key_requires_tenant_id(self, client):
        response = client.post(f"{PREFIX}/run", json={}, headers={CRON_HEADER: "esc_not-a-real-key"})

        assert response.status_code == 400
        assert response.json()["message"] == "tenant_id is required"

    def test_wrong_secret_without_session(self, client):
        response = client.post(
            f"{PREFIX}/run", json={"tenant_id": TENANT_A}, headers={CRON_HEADER: "esc_not-a-real-key"}
        )

        assert response.status_code == 401

    def test_tenant_key_with_query_tenant(self, client, admin_headers, sftp_source, remotes):
        remotes["files.example.com"].objects = remote_files("a.pdf")
        key = client.post(f"{PREFIX}/cron/rotate", json={"tenant_id": TENANT_A}, headers=admin_headers).json()

        response = client.post(
            f"{PREFIX}/run",
            params={"tenant_id": TENANT_A},
            headers={CRON_HEADER: key["cron_secret"]},
        )

        assert response.status_code == 200
        assert response.json()["inserted_total"] == 1

    def test_member_session_forbidden(self, client, member_headers):
        response = client.post(f"{PREFIX}/run", json={"tenant_id": TENANT_A}, headers=member_headers)

        assert response.status_code == 403

    def test_admin_session_runs_one_source(self, client, admin_headers, sftp_source, remotes):
        remotes["files.example.com"].objects = remote_files("a.pdf")

        response = client.post(
            f"{PREFIX}/run",
            json={"tenant_id": TENANT_A, "source_id": sftp_source},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["results"][0]["source_id"] == sftp_source

    def test_connector_failure_reported_per_source(self, client, sftp_source, remotes):
        remotes["files.example.com"].list_error = ConnectorError("Connection refused")

        response = client.post(f"{PREFIX}/run", json={}, headers={CRON_HEADER: GLOBAL_SECRET})

        assert response.status_code == 200
        assert response.json()["results"] == [
            {"source_id": sftp_source, "status": "ERROR", "inserted": 0, "message": "Connection refused"}
        ]

    def test_missing_schema_returns_hint(self, make_app, tmp_path):
        bare = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool)
        client = TestClient(make_app(bare))

        response = client.post(f"{PREFIX}/run", json={}, headers={CRON_HEADER: GLOBAL_SECRET})

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "infrastructure_error"
        assert data["details"]["hint"] == MISSING_SCHEMA_HINT
        asyncio.run(bare.dispose())


# =============================================================================
# Source Endpoint Tests
# =============================================================================

class TestSourceEndpoints:
    """Tests for source listing and configuration."""

    def test_list_requires_session(self, client):
        response = client.get(f"{PREFIX}/", params={"tenant_id": TENANT_A})

        assert response.status_code == 401

    def test_list_hides_secrets(self, client, admin_headers, sftp_source):
        response = client.get(f"{PREFIX}/", params={"tenant_id": TENANT_A}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert [s["id"] for s in data] == [sftp_source]
        assert "secrets" not in data[0]
        assert "password" not in response.text

    def test_upsert_missing_host(self, client, admin_headers):
        response = client.post(
            f"{PREFIX}/upsert",
            json={"tenant_id": TENANT_A, "provider": "SFTP", "config": {"remote_path": "/in"}},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_upsert_unknown_provider(self, client, admin_headers):
        response = client.post(
            f"{PREFIX}/upsert",
            json={"tenant_id": TENANT_A, "provider": "DROPBOX", "config": {}},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert response.json()["details"]["errors"]

    def test_upsert_by_member_forbidden(self, client, member_headers):
        response = client.post(
            f"{PREFIX}/upsert",
            json={"tenant_id": TENANT_A, "provider": "FTPS", "config": {"host": "ftp.example.com"}},
            headers=member_headers,
        )

        assert response.status_code == 403

    def test_connection_test_lists_files(self, client, admin_headers, sftp_source, remotes):
        remotes["files.example.com"].objects = remote_files("a.pdf", "b.pdf")

        response = client.post(f"{PREFIX}/test", json={"source_id": sftp_source}, headers=admin_headers)

        assert response.status_code == 200
        assert [f["name"] for f in response.json()["files"]] == ["a.pdf", "b.pdf"]

    def test_connection_test_failure(self, client, admin_headers, sftp_source, remotes):
        remotes["files.example.com"].list_error = ConnectorError("Authentication failed")

        response = client.post(f"{PREFIX}/test", json={"source_id": sftp_source}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "Authentication failed"}

    def test_status_and_disconnect(self, client, admin_headers, member_headers, drive_source):
        params = {"source_id": drive_source}

        assert client.get(f"{PREFIX}/status", params=params, headers=member_headers).json() == {"connected": False}

        # Connect through the OAuth flow, then disconnect
        start = client.get(
            f"{PREFIX}/oauth/google/start",
            params={"source_id": drive_source, "mode": "json"},
            headers=admin_headers,
        )
        state = parse_qs(urlsplit(start.json()["auth_url"]).query)["state"][0]
        client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"code": "c", "state": state},
            headers=admin_headers,
            follow_redirects=False,
        )
        assert client.get(f"{PREFIX}/status", params=params, headers=member_headers).json() == {"connected": True}

        response = client.post(f"{PREFIX}/disconnect", json={"source_id": drive_source}, headers=admin_headers)

        assert response.json() == {"ok": True}
        assert client.get(f"{PREFIX}/status", params=params, headers=member_headers).json() == {"connected": False}

    def test_unknown_source(self, client, admin_headers):
        response = client.post(f"{PREFIX}/disconnect", json={"source_id": "missing"}, headers=admin_headers)

        assert response.status_code == 404


# =============================================================================
# Drive Picker Endpoint Tests
# =============================================================================

class TestDrivePickerEndpoints:
    """Tests for folder browsing, account lookup and hand-picked imports."""

    @pytest.fixture
    def connected_drive(self, client, admin_headers) -> str:
        response = client.post(
            f"{PREFIX}/upsert",
            json={
                "tenant_id": TENANT_A,
                "name": "Scans",
                "provider": "GOOGLE_DRIVE",
                "config": {"folder_id": "drive-folder"},
                "secrets": {"refresh_token": "r1"},
            },
            headers=admin_headers,
        )
        return response.json()["data"]["id"]

    def test_folders(self, client, admin_headers, connected_drive, remotes):
        remotes["drive-folder"].folders = [RemoteFolder(id="d1", name="2024")]
        remotes["drive-folder"].objects = remote_files("a.pdf", with_ids=True)

        response = client.get(
            f"{PREFIX}/folders", params={"source_id": connected_drive, "parent_id": "d0"}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["parent_id"] == "d0"
        assert data["folders"] == [{"id": "d1", "name": "2024"}]
        assert [f["name"] for f in data["files"]] == ["a.pdf"]

    def test_folders_not_connected(self, client, admin_headers, drive_source):
        response = client.get(f"{PREFIX}/folders", params={"source_id": drive_source}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["message"] == "Not connected"

    def test_folders_for_sftp_source(self, client, admin_headers, sftp_source):
        response = client.get(f"{PREFIX}/folders", params={"source_id": sftp_source}, headers=admin_headers)

        assert response.status_code == 400

    def test_whoami(self, client, admin_headers, drive_source, connected_drive, remotes):
        remotes["drive-folder"].item_names = {"drive-folder": "Scans"}

        disconnected = client.get(f"{PREFIX}/whoami", params={"source_id": drive_source}, headers=admin_headers)
        connected = client.get(f"{PREFIX}/whoami", params={"source_id": connected_drive}, headers=admin_headers)

        assert disconnected.json() == {"provider": "GOOGLE_DRIVE", "connected": False, "folder_id": "drive-folder"}
        assert connected.json()["account"] == {"email": "admin@example.com", "display_name": "Admin"}
        assert connected.json()["folder_name"] == "Scans"

    def test_import_file(self, client, admin_headers, connected_drive):
        body = {"source_id": connected_drive, "files": [{"id": "f1", "name": "a.pdf"}]}

        first = client.post(f"{PREFIX}/import-file", json=body, headers=admin_headers)
        second = client.post(f"{PREFIX}/import-file", json=body, headers=admin_headers)

        assert first.status_code == 200
        assert first.json() == {
            "ok": True,
            "inserted": 1,
            "results": [{"id": "f1", "status": "IMPORTED", "document_id": "doc-1"}],
        }
        assert second.json()["results"] == [{"id": "f1", "status": "SKIPPED"}]

    def test_import_file_by_member_forbidden(self, client, member_headers, connected_drive):
        response = client.post(
            f"{PREFIX}/import-file",
            json={"source_id": connected_drive, "files": [{"id": "f1"}]},
            headers=member_headers,
        )

        assert response.status_code == 403


# =============================================================================
# Cron Endpoint Tests
# =============================================================================

class TestCronEndpoints:
    """Tests for tenant cron key management."""

    def test_not_configured(self, client, admin_headers):
        response = client.get(f"{PREFIX}/cron", params={"tenant_id": TENANT_A}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["configured"] is False
        assert response.json()["default_run_limit"] == 10

    def test_update_before_rotate(self, client, admin_headers):
        response = client.post(f"{PREFIX}/cron", json={"tenant_id": TENANT_A, "enabled": True}, headers=admin_headers)

        assert response.status_code == 400

    def test_rotate_then_configure(self, client, admin_headers):
        rotated = client.post(f"{PREFIX}/cron/rotate", json={"tenant_id": TENANT_A}, headers=admin_headers)
        assert rotated.status_code == 200
        secret = rotated.json()["cron_secret"]
        assert secret.startswith(rotated.json()["key_prefix"])

        updated = client.post(
            f"{PREFIX}/cron",
            json={"tenant_id": TENANT_A, "enabled": False, "default_run_limit": 500},
            headers=admin_headers,
        )
        assert updated.json() == {"ok": True}

        data = client.get(f"{PREFIX}/cron", params={"tenant_id": TENANT_A}, headers=admin_headers).json()
        assert data["configured"] is True
        assert data["enabled"] is False
        assert data["default_run_limit"] == 50
        assert data["key_prefix"] == rotated.json()["key_prefix"]
        assert secret not in str(data)

    def test_member_cannot_rotate(self, client, member_headers):
        response = client.post(f"{PREFIX}/cron/rotate", json={"tenant_id": TENANT_A}, headers=member_headers)

        assert response.status_code == 403


# =============================================================================
# OAuth Endpoint Tests
# =============================================================================

class TestOAuthEndpoints:
    """Tests for the consent redirect and callback."""

    def start_state(self, client, headers, source_id: str, return_to: str = None) -> str:
        params = {"source_id": source_id, "mode": "json"}
        if return_to:
            params["return_to"] = return_to
        response = client.get(f"{PREFIX}/oauth/google/start", params=params, headers=headers)
        assert response.status_code == 200
        return parse_qs(urlsplit(response.json()["auth_url"]).query)["state"][0]

    def test_start_redirects_to_consent(self, client, admin_headers, drive_source):
        response = client.get(
            f"{PREFIX}/oauth/google/start",
            params={"source_id": drive_source},
            headers=admin_headers,
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://accounts.google.com/")

    def test_start_json_mode(self, client, admin_headers, drive_source):
        response = client.get(
            f"{PREFIX}/oauth/google/start",
            params={"source_id": drive_source, "mode": "json"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["redirect_uri"] == (
            "https://app.example.com/api/external-sources/oauth/google/callback"
        )

    def test_start_wrong_provider(self, client, admin_headers, drive_source):
        response = client.get(
            f"{PREFIX}/oauth/microsoft/start",
            params={"source_id": drive_source, "mode": "json"},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Source is not OneDrive"

    def test_unknown_provider(self, client, admin_headers):
        response = client.get(f"{PREFIX}/oauth/dropbox/start", params={"source_id": "s"}, headers=admin_headers)

        assert response.status_code == 404

    def test_callback_bad_state(self, client, admin_headers):
        response = client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"code": "c", "state": "forged.state"},
            headers=admin_headers,
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_callback_connects(self, client, admin_headers, drive_source):
        state = self.start_state(client, admin_headers, drive_source, return_to="/settings?tab=sources")

        response = client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"code": "c", "state": state},
            headers=admin_headers,
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "/settings?tab=sources&external_source=connected"

    def test_callback_without_refresh_token(self, client, admin_headers, drive_source, token_responses):
        token_responses[0] = {"access_token": "at", "expires_in": 3600}
        state = self.start_state(client, admin_headers, drive_source)

        response = client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"code": "c", "state": state},
            headers=admin_headers,
            follow_redirects=False,
        )

        location = urlsplit(response.headers["location"])
        query = {k: v[0] for k, v in parse_qs(location.query).items()}
        assert response.status_code == 302
        assert location.path == "/dashboard/settings"
        assert query["external_source"] == "error"
        assert query["reason"].startswith("No refresh token returned")

    def test_callback_provider_error(self, client, admin_headers, drive_source):
        state = self.start_state(client, admin_headers, drive_source)

        response = client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"state": state, "error": "access_denied"},
            headers=admin_headers,
            follow_redirects=False,
        )

        query = parse_qs(urlsplit(response.headers["location"]).query)
        assert query["external_source"] == ["error"]
        assert query["reason"] == ["access_denied"]

    def test_callback_without_session(self, client, admin_headers, drive_source):
        state = self.start_state(client, admin_headers, drive_source)

        response = client.get(
            f"{PREFIX}/oauth/google/callback",
            params={"code": "c", "state": state},
            follow_redirects=False,
        )

        query = parse_qs(urlsplit(response.headers["location"]).query)
        assert query["reason"] == ["Unauthorized"]
