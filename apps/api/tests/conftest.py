"""Pytest configuration and fixtures."""

import os

# The API module builds its engine at import time; keep it off PostgreSQL in tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apps.api.auth.providers.base import AccountInfo, OAuthProvider, TokenSet
from apps.api.auth.providers.registry import ProviderRegistry
from apps.api.config import Settings, get_settings
from apps.api.core.secrets import TokenCipher
from apps.api.core.security import Identity, create_identity_token
from apps.api.database import Base, get_db
from apps.api.main import app
from apps.api.services.document_store import DocumentStore
from apps.api.services.oauth_service import OAuthService

TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789-abcdefghij"
RETURN_URL = "https://app.example.com/dashboard/integrations"


class FakeProvider(OAuthProvider):
    """Scriptable provider that never touches the network."""

    display_name = "Fake"

    def __init__(self, store, settings, cipher, name="google"):
        super().__init__(store, settings, cipher=cipher)
        self.name = name
        self.exchange_error = None
        self.refresh_error = None
        self.rotated_refresh_token = None
        self.refresh_calls = []
        self.revoked = []
        self.account = AccountInfo(email="owner@example.com", name="Owner", account_id="acct-1")

    @property
    def authorization_endpoint(self) -> str:
        return "https://auth.example.com/authorize"

    @property
    def token_endpoint(self) -> str:
        return "https://auth.example.com/token"

    async def exchange_code(self, code, redirect_uri, organization_id):
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenSet(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes=["scope.read", "scope.write"],
            account=self.account,
            extra={"teamId": "T123"} if self.name == "slack" else {},
        )

    async def refresh(self, refresh_token, organization_id):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenSet(
            access_token="access-refreshed",
            refresh_token=self.rotated_refresh_token or refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def fetch_account_info(self, access_token):
        return self.account

    async def _revoke_token(self, access_token, organization_id):
        self.revoked.append(access_token)


async def no_sleep(seconds):
    return None


@pytest.fixture
def test_db():
    """Create test database and return its session factory."""
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def settings():
    """Settings with test credentials and no state lookup backoff."""
    return Settings(
        encryption_key=TEST_ENCRYPTION_KEY,
        jwt_secret=get_settings().jwt_secret,
        default_return_url=RETURN_URL,
        oauth_callback_url="https://api.example.com/oauth/callback",
        state_lookup_retries=0,
        state_lookup_backoff_seconds=0,
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        box_client_id="box-client-id",
        box_client_secret="box-client-secret",
        dropbox_client_id="dropbox-client-id",
        dropbox_client_secret="dropbox-client-secret",
        slack_client_id="slack-client-id",
        slack_client_secret="slack-client-secret",
    )


@pytest.fixture
def store(test_db):
    return DocumentStore(test_db, batch_write_limit=500)


@pytest.fixture
def cipher(settings):
    return TokenCipher(settings.encryption_key)


@pytest.fixture
def make_provider(store, settings, cipher):
    def factory(name="google"):
        return FakeProvider(store, settings, cipher, name=name)

    return factory


@pytest.fixture
def providers(make_provider):
    return {name: make_provider(name) for name in ("google", "box", "dropbox", "slack")}


@pytest.fixture
def service(store, settings, cipher, providers):
    """OAuth service wired to fake providers."""
    return OAuthService(
        store, ProviderRegistry(providers.values()), settings, cipher=cipher, sleep=no_sleep
    )


@pytest.fixture
def admin():
    return Identity(uid="user-1", organization_id="org1", role="admin", email="admin@example.com")


@pytest.fixture
def member():
    return Identity(uid="user-2", organization_id="org1", role="member")


@pytest.fixture
def seed_connection(service, cipher):
    """Write a canonical connection with encrypted tokens."""

    def seed(organization_id="org1", provider="google", **fields):
        data = {
            "accountEmail": "owner@example.com",
            "accessToken": cipher.encrypt("access-old"),
            "refreshToken": cipher.encrypt("refresh-old"),
            "tokenExpiresAt": datetime.now(timezone.utc) + timedelta(minutes=10),
            "scopes": ["scope.read"],
            "isActive": True,
            "consecutiveRefreshFailures": 0,
        }
        data.update(fields)
        service.connections.upsert_connection(organization_id, provider, data)
        return service.connections.canonical_path(organization_id, provider)

    return seed


@pytest.fixture
def auth_headers():
    def headers(uid="user-1", organization_id="org1", role="admin"):
        token = create_identity_token(uid, organization_id=organization_id, role=role)
        return {"Authorization": f"Bearer {token}"}

    return headers


@pytest.fixture
def client(test_db, service):
    """Create test client."""
    from fastapi.testclient import TestClient

    def override_get_db():
        db = test_db()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.oauth_service = service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.oauth_service = None
