"""OAuth orchestrator tests: initiate, callback, refresh, revoke."""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from apps.api.auth.providers.box_oauth import BoxOAuthProvider
from apps.api.auth.providers.registry import ProviderRegistry
from apps.api.core.errors import (
    CallbackError,
    ConfigurationError,
    FailedPreconditionError,
    InvalidArgumentError,
    InvalidProviderError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    UnauthenticatedError,
)
from apps.api.core.secrets import is_envelope
from apps.api.core.security import Identity
from apps.api.services.oauth_service import OAuthService, build_return_url

RETURN_URL = "https://app.example.com/dashboard/integrations"


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _initiate(service, identity, provider="google", redirect_url=RETURN_URL):
    return asyncio.run(service.initiate_oauth(identity, provider, "org1", redirect_url=redirect_url))


class TestInitiate:
    """Starting an authorization attempt."""

    def test_returns_auth_url_with_state(self, service, admin):
        result = _initiate(service, admin)

        assert len(result["state"]) == 64
        query = _query(result["authUrl"])
        assert query["state"] == result["state"]
        assert query["client_id"] == "google-client-id"
        assert query["redirect_uri"] == "https://api.example.com/oauth/callback"

        stored = service.states.get(result["state"])
        assert stored.organization_id == "org1"
        assert stored.user_id == "user-1"
        assert stored.expires_at - stored.created_at == timedelta(hours=1)

    def test_unknown_provider_checked_first(self, service):
        with pytest.raises(InvalidProviderError):
            asyncio.run(service.initiate_oauth(None, "onedrive", "org1"))

    def test_requires_authentication(self, service):
        with pytest.raises(UnauthenticatedError):
            asyncio.run(service.initiate_oauth(None, "google", "org1"))

    def test_requires_admin_role(self, service, member):
        with pytest.raises(PermissionDeniedError):
            _initiate(service, member)

    def test_requires_matching_organization(self, service):
        outsider = Identity(uid="user-9", organization_id="org2", role="owner")
        with pytest.raises(PermissionDeniedError):
            _initiate(service, outsider)

    def test_default_return_url(self, service, admin):
        result = _initiate(service, admin, redirect_url=None)
        assert service.states.get(result["state"]).redirect_url == service.settings.default_return_url

    def test_missing_credentials_leave_no_state(self, store, settings, cipher, make_provider, admin):
        bare = settings.model_copy(update={"google_client_id": "", "google_client_secret": ""})
        provider = make_provider("google")
        provider.settings = bare
        service = OAuthService(store, ProviderRegistry([provider]), bare, cipher=cipher)

        with pytest.raises(ConfigurationError):
            _initiate(service, admin)
        assert store.list_collection("oauthStates") == []


class TestCallback:
    """Completing an authorization attempt."""

    def test_successful_callback_creates_connection(self, service, admin, cipher):
        state = _initiate(service, admin)["state"]

        redirect = asyncio.run(service.complete_callback("code1", state))

        assert redirect == f"{RETURN_URL}?oauth_success=true&provider=google"
        connection = service.connections.get_connection("org1", "google")
        assert connection.is_active
        assert is_envelope(connection.access_token)
        assert cipher.decrypt(connection.access_token) == "access-code1"
        assert cipher.decrypt(connection.refresh_token) == "refresh-code1"
        assert connection.account_email == "owner@example.com"
        assert connection.connected_by == "user-1"
        assert connection.scopes == ["scope.read", "scope.write"]
        assert service.states.get(state) is None

    def test_state_is_single_use(self, service, admin):
        state = _initiate(service, admin)["state"]
        asyncio.run(service.complete_callback("code1", state))

        with pytest.raises(NotFoundError):
            asyncio.run(service.complete_callback("code1", state))

    def test_expired_state(self, service, admin):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        record = service.states.create("google", "org1", "user-1", RETURN_URL, now=past)

        with pytest.raises(CallbackError) as exc_info:
            asyncio.run(service.complete_callback("code1", record.state))

        assert exc_info.value.code == "expired_state"
        assert exc_info.value.redirect_url == RETURN_URL
        assert service.states.get(record.state) is None
        assert service.connections.get_connection("org1", "google") is None

    def test_missing_state_is_retried_with_backoff(self, store, settings, cipher, providers):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        retrying = settings.model_copy(
            update={"state_lookup_retries": 3, "state_lookup_backoff_seconds": 0.5}
        )
        service = OAuthService(
            store, ProviderRegistry(providers.values()), retrying, cipher=cipher, sleep=record_sleep
        )

        with pytest.raises(NotFoundError):
            asyncio.run(service.complete_callback("code", "f" * 64))
        assert sleeps == [0.5, 1.0, 1.5]

    def test_provider_failure_consumes_state(self, service, providers, admin):
        providers["google"].exchange_error = ProviderError("invalid_grant", permanent=True)
        state = _initiate(service, admin)["state"]

        redirect = asyncio.run(service.callback_redirect("code1", state))

        assert _query(redirect) == {"oauth_error": "callback_failed", "provider": "google"}
        assert service.states.get(state) is None

    def test_redirect_replaces_previous_result_params(self, service, admin):
        state = _initiate(
            service, admin, redirect_url=f"{RETURN_URL}?tab=cloud&oauth_error=old&provider=box"
        )["state"]

        redirect = asyncio.run(service.callback_redirect("code1", state))

        assert _query(redirect) == {"tab": "cloud", "oauth_success": "true", "provider": "google"}

    def test_provider_reported_error(self, service, admin):
        state = _initiate(service, admin)["state"]

        redirect = asyncio.run(service.callback_redirect(None, state, error="access_denied"))

        assert redirect.startswith(RETURN_URL)
        assert _query(redirect) == {"oauth_error": "access_denied", "provider": "google"}
        assert service.states.get(state) is None

    def test_missing_parameters(self, service):
        redirect = asyncio.run(service.callback_redirect(None, None))
        assert _query(redirect) == {"oauth_error": "missing_parameters"}

    def test_unknown_state_has_no_redirect(self, service):
        assert asyncio.run(service.callback_redirect("code", "0" * 64)) is None

    def test_slack_callback_writes_workspace_record(self, service, admin, store):
        state = _initiate(service, admin, provider="slack")["state"]
        asyncio.run(service.complete_callback("code1", state))

        connection = service.connections.get_connection("org1", "slack")
        assert connection.connection_id
        workspace = store.get(f"organizations/org1/slackConnections/{connection.connection_id}")
        assert workspace["teamId"] == "T123"
        assert is_envelope(workspace["accessToken"])


class TestRefresh:
    """Token refresh and the failure policy."""

    def test_refresh_rotates_access_token(self, service, seed_connection, cipher, providers):
        seed_connection(consecutiveRefreshFailures=2)

        connection = asyncio.run(service.refresh_connection("org1", "google"))

        assert providers["google"].refresh_calls == ["refresh-old"]
        assert cipher.decrypt(connection.access_token) == "access-refreshed"
        assert cipher.decrypt(connection.refresh_token) == "refresh-old"
        assert connection.consecutive_refresh_failures == 0
        assert connection.last_refreshed_at is not None

    def test_refresh_stores_rotated_refresh_token(self, service, seed_connection, cipher, providers):
        seed_connection()
        providers["google"].rotated_refresh_token = "refresh-new"

        connection = asyncio.run(service.refresh_connection("org1", "google"))
        assert cipher.decrypt(connection.refresh_token) == "refresh-new"

    def test_legacy_plaintext_refresh_token(self, service, seed_connection, providers):
        seed_connection(refreshToken="1//plaintext-legacy")
        asyncio.run(service.refresh_connection("org1", "google"))
        assert providers["google"].refresh_calls == ["1//plaintext-legacy"]

    def test_permanent_failure_deactivates(self, service, seed_connection, providers):
        seed_connection(consecutiveRefreshFailures=2)
        providers["google"].refresh_error = ProviderError("invalid_grant", permanent=True)

        with pytest.raises(ProviderError):
            asyncio.run(service.refresh_connection("org1", "google"))

        connection = service.connections.get_connection("org1", "google")
        assert connection.is_active is False
        assert connection.requires_reconnection is True
        assert connection.last_refresh_error == "invalid_grant"

    def test_transient_failure_reaching_limit_deactivates(self, service, seed_connection, providers):
        seed_connection(consecutiveRefreshFailures=2)
        providers["google"].refresh_error = ProviderError("timeout", permanent=False)

        with pytest.raises(ProviderError):
            asyncio.run(service.refresh_connection("org1", "google"))

        connection = service.connections.get_connection("org1", "google")
        assert connection.consecutive_refresh_failures == 3
        assert connection.is_active is False
        assert connection.requires_reconnection is False

    def test_transient_failure_below_limit_stays_active(self, service, seed_connection, providers):
        seed_connection()
        providers["google"].refresh_error = ProviderError("503", permanent=False)

        with pytest.raises(ProviderError):
            asyncio.run(service.refresh_connection("org1", "google"))

        connection = service.connections.get_connection("org1", "google")
        assert connection.is_active is True
        assert connection.consecutive_refresh_failures == 1

    def test_undecryptable_refresh_token_requires_reconnect(self, service, seed_connection):
        seed_connection(refreshToken="00:11:22")

        with pytest.raises(FailedPreconditionError):
            asyncio.run(service.refresh_connection("org1", "google"))

        connection = service.connections.get_connection("org1", "google")
        assert connection.is_active is False
        assert connection.requires_reconnection is True

    def test_missing_connection(self, service):
        with pytest.raises(NotFoundError):
            asyncio.run(service.refresh_connection("org1", "google"))

    def test_inactive_connection(self, service, seed_connection):
        seed_connection(isActive=False)
        with pytest.raises(FailedPreconditionError):
            asyncio.run(service.refresh_connection("org1", "google"))

    def test_no_refresh_token(self, service, seed_connection, store):
        path = seed_connection()
        data = store.get(path)
        data.pop("refreshToken")
        store.set(path, data)

        with pytest.raises(FailedPreconditionError, match="No refresh token"):
            asyncio.run(service.refresh_connection("org1", "google"))

    def test_member_refresh_checks_organization(self, service, seed_connection):
        seed_connection()
        outsider = Identity(uid="user-9", organization_id="org2", role="admin")
        with pytest.raises(PermissionDeniedError):
            asyncio.run(service.refresh(outsider, "org1", "google"))

    def test_legacy_connection_is_promoted_on_refresh(self, service, store, cipher):
        store.set(
            "cloudIntegrations/org1_google",
            {
                "email": "legacy@example.com",
                "accessToken": cipher.encrypt("access-legacy"),
                "refreshToken": cipher.encrypt("refresh-legacy"),
                "isActive": True,
            },
        )

        connection = asyncio.run(service.refresh_connection("org1", "google"))

        assert connection.account_email == "legacy@example.com"
        assert store.get("cloudIntegrations/org1_google")["_migrated"] is True


class TestRevoke:
    """Disconnecting."""

    def test_revoke_calls_provider_and_deletes(self, service, seed_connection, providers, admin):
        seed_connection()

        result = asyncio.run(service.revoke_connection(admin, "org1", "google"))

        assert result["success"] is True
        assert providers["google"].revoked == ["access-old"]
        assert service.connections.get_connection("org1", "google") is None

    def test_revoke_with_undecryptable_token_still_deletes(self, service, seed_connection, providers, admin):
        seed_connection(accessToken="aa:bb:cc")

        asyncio.run(service.revoke_connection(admin, "org1", "google"))

        assert providers["google"].revoked == []
        assert service.connections.get_connection("org1", "google") is None

    def test_revoke_requires_admin(self, service, seed_connection, member):
        seed_connection()
        with pytest.raises(PermissionDeniedError):
            asyncio.run(service.revoke_connection(member, "org1", "google"))

    def test_revoke_missing_connection(self, service, admin):
        with pytest.raises(NotFoundError):
            asyncio.run(service.revoke_connection(admin, "org1", "box"))

    def test_disconnect_is_lenient(self, service, member):
        result = asyncio.run(service.disconnect(member, "org1", "box"))
        assert result == {"success": True, "message": "Integration already disconnected"}

    def test_revoke_removes_workspace_record(self, service, admin, store):
        state = _initiate(service, admin, provider="slack")["state"]
        asyncio.run(service.complete_callback("code1", state))
        connection_id = service.connections.get_connection("org1", "slack").connection_id

        asyncio.run(service.revoke_connection(admin, "org1", "slack"))

        assert store.get(f"organizations/org1/slackConnections/{connection_id}") is None


class TestAccountAndAccess:
    """Client tokens, account info and feature checks."""

    def test_save_tokens_encrypts(self, service, member, cipher):
        connection = asyncio.run(
            service.save_tokens(member, "org1", "box", access_token="box-access", refresh_token="box-refresh")
        )

        assert cipher.decrypt(connection.access_token) == "box-access"
        assert connection.account_email == "owner@example.com"
        assert connection.connected_by == "user-2"

    def test_update_account_info(self, service, seed_connection, providers, member):
        seed_connection(provider="dropbox", accountEmail="")
        providers["dropbox"].account.email = "dbx@example.com"

        account = asyncio.run(service.update_account_info(member, "org1", "dropbox"))

        assert account.email == "dbx@example.com"
        assert service.connections.get_connection("org1", "dropbox").account_email == "dbx@example.com"

    def test_update_account_info_rejects_google(self, service, seed_connection, member):
        seed_connection()
        with pytest.raises(InvalidArgumentError):
            asyncio.run(service.update_account_info(member, "org1", "google"))

    def test_verify_access_reports_missing_scopes(self, service, seed_connection, member):
        seed_connection(provider="box", scopes=["root_readonly"])

        result = asyncio.run(service.verify_access(member, "org1", "box", app="dashboard"))

        assert result["hasAccess"] is False
        assert result["missingScopes"] == ["root_readwrite"]

    def test_verify_access_accepts_box_collapsed_grant(
        self, service, seed_connection, member, store, settings, cipher
    ):
        granted = BoxOAuthProvider(store, settings, cipher=cipher).get_scopes()
        seed_connection(provider="box", scopes=granted)

        result = asyncio.run(service.verify_access(member, "org1", "box", app="dashboard"))

        assert granted == ["root_readwrite"]
        assert result["hasAccess"] is True
        assert result["missingScopes"] == []

    def test_verify_access_without_connection(self, service, member):
        result = asyncio.run(service.verify_access(member, "org1", "slack", features=["send.message"]))
        assert result == {"hasAccess": False, "connected": False, "missingScopes": []}

    def test_list_connections_has_no_tokens(self, service, seed_connection, member):
        seed_connection()
        seed_connection(provider="box")

        summaries = asyncio.run(service.list_connections(member, "org1"))

        assert [summary.provider for summary in summaries] == ["google", "box"]
        assert "accessToken" not in summaries[0].to_document()


def test_build_return_url_keeps_fragment_and_path():
    url = build_return_url("https://app.example.com/a/b?x=1#frag", {"oauth_success": "true"})
    assert url == "https://app.example.com/a/b?x=1&oauth_success=true#frag"
