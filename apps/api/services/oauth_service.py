"""OAuth connection lifecycle: initiate, callback, refresh and revoke.

Each state token moves INITIATED -> CALLBACK_RECEIVED -> COMPLETED | FAILED
exactly once. States are deleted as soon as a callback finishes, whether it
succeeded or failed terminally.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from apps.api.auth.providers.base import AccountInfo, OAuthProvider, TokenSet
from apps.api.auth.providers.features import app_features, granted_scopes, required_scopes
from apps.api.auth.providers.registry import ProviderRegistry, build_registry
from apps.api.config import Settings, get_settings
from apps.api.core.errors import (
    CallbackError,
    ConfigurationError,
    DecryptionError,
    ExpiredStateError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    InvalidProviderError,
    NotFoundError,
    OAuthServiceError,
    ProviderError,
    UnauthenticatedError,
)
from apps.api.core.secrets import TokenCipher
from apps.api.core.security import Identity, require_admin, require_organization
from apps.api.models.oauth import Connection, ConnectionSummary, OAuthState, utcnow
from apps.api.services.connection_store import ConnectionStore
from apps.api.services.document_store import DocumentStore
from apps.api.services.oauth_states import OAuthStateStore

logger = structlog.get_logger()

# Query parameters the callback owns on the return URL
RESULT_PARAMS = ("oauth_success", "oauth_error", "provider")

# Providers whose stored identity can be re-fetched on demand
ACCOUNT_INFO_PROVIDERS = ("box", "dropbox")


def build_return_url(base_url: str, params: Dict[str, str]) -> str:
    """Append result parameters, replacing earlier results and keeping everything else."""
    parts = urlsplit(base_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in RESULT_PARAMS
    ]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def callback_error_code(error: OAuthServiceError) -> str:
    """Short error code shown to the browser after a failed callback."""
    if isinstance(error, ExpiredStateError):
        return "session_expired"
    if isinstance(error, NotFoundError):
        return "invalid_state"
    if isinstance(error, ConfigurationError):
        return "configuration_error"
    if "redirect_uri_mismatch" in error.message.lower():
        return "redirect_uri_mismatch"
    return "callback_failed"


def short(state: Optional[str]) -> str:
    """Truncated state for log lines."""
    return f"{state[:8]}..." if state else ""


class OAuthService:
    """Coordinates providers, connection storage and state tokens."""

    def __init__(
        self,
        store: DocumentStore,
        registry: ProviderRegistry,
        settings: Settings,
        cipher: Optional[TokenCipher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings
        self.cipher = cipher or TokenCipher(settings.encryption_key)
        self.connections = ConnectionStore(store)
        self.states = OAuthStateStore(store, ttl_seconds=settings.oauth_state_ttl_seconds)
        self._sleep = sleep

    # Helpers

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self.registry.get_provider(name)
        if provider is None:
            raise InvalidProviderError(name)
        return provider

    @staticmethod
    def authenticate(identity: Optional[Identity]) -> Identity:
        if identity is None:
            raise UnauthenticatedError("User must be authenticated")
        return identity

    def list_providers(self) -> List[Dict[str, str]]:
        return self.registry.list_providers()

    # Initiate

    async def initiate_oauth(
        self,
        identity: Optional[Identity],
        provider: str,
        organization_id: str,
        redirect_url: Optional[str] = None,
    ) -> Dict[str, str]:
        """Start an authorization attempt.

        Args:
            identity: Caller; must be an admin or owner of the organization
            provider: Provider name
            organization_id: Organization being connected
            redirect_url: Where to send the browser after the callback

        Returns:
            Dict with authUrl and state
        """
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        if not organization_id:
            raise InvalidArgumentError("organizationId is required")
        require_admin(caller, organization_id)

        record = self.states.create(
            provider=adapter.name,
            organization_id=organization_id,
            user_id=caller.uid,
            redirect_url=redirect_url or self.settings.default_return_url,
        )
        try:
            auth_url = adapter.build_authorization_url(
                organization_id, self.settings.oauth_callback_url, record.state
            )
        except OAuthServiceError:
            self.states.delete(record.state)
            raise

        logger.info(
            "Starting OAuth flow",
            provider=adapter.name,
            organization_id=organization_id,
            user_id=caller.uid,
            state=short(record.state),
        )
        return {"authUrl": auth_url, "state": record.state}

    # Callback

    async def _load_state(self, state: str) -> OAuthState:
        """Read a state, retrying with linear backoff to ride out replication lag."""
        record = self.states.get(state)
        attempt = 0
        while record is None and attempt < self.settings.state_lookup_retries:
            attempt += 1
            await self._sleep(self.settings.state_lookup_backoff_seconds * attempt)
            record = self.states.get(state)
            logger.debug("Retried OAuth state lookup", state=short(state), attempt=attempt)

        if record is None:
            logger.warning("OAuth state not found", state=short(state))
            raise NotFoundError("Invalid or expired state")
        return record

    async def complete_callback(self, code: str, state: str) -> str:
        """Finish an authorization attempt and return the success redirect URL.

        Raises:
            InvalidArgumentError: If code or state is missing
            NotFoundError: If the state is unknown or already consumed
            CallbackError: If anything fails after the state was read; the
                state is deleted and the error carries its return URL
        """
        if not code or not state:
            raise InvalidArgumentError("Missing code or state")

        record = await self._load_state(state)
        try:
            if record.is_expired():
                raise ExpiredStateError("OAuth state expired")
            adapter = self.get_provider(record.provider)
            tokens = await adapter.exchange_code(
                code, self.settings.oauth_callback_url, record.organization_id
            )
            self.store_tokens(record.organization_id, adapter.name, tokens, connected_by=record.user_id)
        except Exception as e:
            self.states.delete(state)
            if isinstance(e, OAuthServiceError):
                cause = e
                logger.warning(
                    "OAuth callback failed",
                    provider=record.provider,
                    organization_id=record.organization_id,
                    state=short(state),
                    error=e.message,
                )
            else:
                cause = InternalError(f"OAuth callback failed: {e}")
                logger.exception("Unexpected OAuth callback failure", provider=record.provider)
            raise CallbackError(cause, record.redirect_url, record.provider) from e

        self.states.delete(state)
        logger.info(
            "OAuth callback completed",
            provider=record.provider,
            organization_id=record.organization_id,
            state=short(state),
        )
        return build_return_url(
            record.redirect_url or self.settings.default_return_url,
            {"oauth_success": "true", "provider": record.provider},
        )

    async def callback_redirect(
        self, code: Optional[str], state: Optional[str], error: Optional[str] = None
    ) -> Optional[str]:
        """Resolve a provider callback into a browser redirect.

        Returns None when no return URL can be recovered; the caller then
        renders a static error page.
        """
        if error or not code or not state:
            record = self.states.get(state) if state else None
            if record is not None:
                self.states.delete(state)
            base_url = record.redirect_url if record and record.redirect_url else self.settings.default_return_url
            params = {"oauth_error": error or "missing_parameters"}
            if record is not None:
                params["provider"] = record.provider
            logger.warning("OAuth callback rejected", error=params["oauth_error"], state=short(state))
            return build_return_url(base_url, params)

        try:
            return await self.complete_callback(code, state)
        except CallbackError as e:
            params = {"oauth_error": callback_error_code(e.cause)}
            if e.provider:
                params["provider"] = e.provider
            return build_return_url(e.redirect_url or self.settings.default_return_url, params)
        except NotFoundError:
            return None

    def store_tokens(
        self,
        organization_id: str,
        provider: str,
        tokens: TokenSet,
        connected_by: Optional[str] = None,
    ) -> Connection:
        """Encrypt tokens and persist them as the organization's connection."""
        now = utcnow()
        access_token = self.cipher.encrypt(tokens.access_token)
        refresh_token = self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None

        fields = {
            "provider": provider,
            "organizationId": organization_id,
            "accountEmail": tokens.account.email,
            "accountName": tokens.account.name,
            "accountId": tokens.account.account_id,
            "accessToken": access_token,
            "refreshToken": refresh_token,
            "tokenExpiresAt": tokens.expires_at,
            "scopes": sorted(set(tokens.scopes)),
            "isActive": True,
            "connectedAt": now,
            "connectedBy": connected_by,
            "lastRefreshedAt": now,
            "consecutiveRefreshFailures": 0,
            "requiresReconnection": False,
        }

        auxiliary = {
            key: value
            for key, value in fields.items()
            if key not in ("consecutiveRefreshFailures", "requiresReconnection") and value is not None
        }
        auxiliary.update(tokens.extra)
        connection_id = self.connections.add_auxiliary(organization_id, provider, auxiliary)
        if connection_id:
            fields["connectionId"] = connection_id

        self.connections.upsert_connection(organization_id, provider, fields)
        logger.info(
            "Stored OAuth connection",
            provider=provider,
            organization_id=organization_id,
            account_email=tokens.account.email,
            connection_id=connection_id,
        )
        return self.connections.get_connection(organization_id, provider)

    # Lookup

    def get_connection(
        self, organization_id: str, provider: str, user_id: Optional[str] = None
    ) -> Optional[Connection]:
        """Find a connection, promoting a legacy record to the canonical location."""
        match = self.connections.find_connection(organization_id, provider, user_id)
        if match is None:
            return None
        return self.connections.promote(match, organization_id, provider)

    async def list_connections(self, identity: Optional[Identity], organization_id: str) -> List[ConnectionSummary]:
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)
        return [
            ConnectionSummary.from_connection(connection)
            for connection in self.connections.list_connections(organization_id, self.registry.names)
        ]

    # Refresh

    async def refresh(self, identity: Optional[Identity], organization_id: str, provider: str) -> Connection:
        """Refresh on behalf of a member of the organization."""
        self.get_provider(provider)
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)
        return await self.refresh_connection(organization_id, provider)

    async def refresh_connection(self, organization_id: str, provider: str) -> Connection:
        """Rotate a connection's access token.

        Raises:
            NotFoundError: If there is no connection
            FailedPreconditionError: If the connection is inactive, has no
                refresh token, or its refresh token cannot be decrypted
            ProviderError: If the provider rejects the refresh; the failure
                is recorded on the connection first
        """
        adapter = self.get_provider(provider)
        connection = self.get_connection(organization_id, provider)
        if connection is None:
            raise NotFoundError(f"No {provider} connection found for organization {organization_id}")
        if not connection.is_active:
            raise FailedPreconditionError("Connection is inactive. Please reconnect your account.")
        if not connection.refresh_token:
            raise FailedPreconditionError("No refresh token available")

        try:
            refresh_token = self.cipher.reveal(connection.refresh_token)
        except DecryptionError as e:
            self.record_refresh_failure(organization_id, provider, connection, e)
            raise FailedPreconditionError(
                "Stored refresh token cannot be decrypted. Please reconnect your account."
            ) from e

        try:
            tokens = await adapter.refresh(refresh_token, organization_id)
        except ProviderError as e:
            self.record_refresh_failure(organization_id, provider, connection, e)
            raise

        now = utcnow()
        fields = {
            "accessToken": self.cipher.encrypt(tokens.access_token),
            "tokenExpiresAt": tokens.expires_at,
            "lastRefreshedAt": now,
            "consecutiveRefreshFailures": 0,
            "requiresReconnection": False,
            "lastRefreshError": None,
        }
        if tokens.refresh_token and tokens.refresh_token != refresh_token:
            fields["refreshToken"] = self.cipher.encrypt(tokens.refresh_token)
        self.connections.update_connection(organization_id, provider, fields)

        logger.info("Refreshed OAuth token", provider=provider, organization_id=organization_id)
        return self.connections.get_connection(organization_id, provider)

    def record_refresh_failure(
        self,
        organization_id: str,
        provider: str,
        connection: Connection,
        error: OAuthServiceError,
    ) -> dict:
        """Count a failed refresh and deactivate the connection when it cannot recover.

        Permanent failures deactivate at once and ask for reconnection.
        Transient failures deactivate after ``max_refresh_failures`` in a row.
        """
        permanent = isinstance(error, DecryptionError) or getattr(error, "permanent", False)
        failures = connection.consecutive_refresh_failures + 1
        fields = {
            "consecutiveRefreshFailures": failures,
            "lastRefreshError": error.message,
            "lastRefreshErrorAt": utcnow(),
        }
        if permanent:
            fields.update(isActive=False, requiresReconnection=True)
        elif failures >= self.settings.max_refresh_failures:
            fields.update(isActive=False, requiresReconnection=False)

        self.connections.update_connection(organization_id, provider, fields)
        logger.warning(
            "OAuth token refresh failed",
            provider=provider,
            organization_id=organization_id,
            permanent=permanent,
            consecutive_failures=failures,
            deactivated=not fields.get("isActive", True),
            error=error.message,
        )
        return fields

    # Revoke

    async def revoke_connection(
        self,
        identity: Optional[Identity],
        organization_id: str,
        provider: str,
        connection_id: Optional[str] = None,
    ) -> Dict[str, object]:
        """Disconnect an organization from a provider (admins only).

        Provider-side revocation is best effort; the stored connection is
        removed regardless.
        """
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        require_admin(caller, organization_id)

        if not await self._remove_connection(adapter, organization_id, connection_id):
            raise NotFoundError(f"No {provider} connection found for organization {organization_id}")
        return {"success": True, "message": f"{adapter.display_name} disconnected"}

    async def disconnect(
        self,
        identity: Optional[Identity],
        organization_id: str,
        provider: str,
        connection_id: Optional[str] = None,
    ) -> Dict[str, object]:
        """Lenient revoke for members; an already-removed connection counts as success."""
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)

        removed = await self._remove_connection(adapter, organization_id, connection_id)
        message = f"{adapter.display_name} disconnected" if removed else "Integration already disconnected"
        return {"success": True, "message": message}

    async def _remove_connection(
        self, adapter: OAuthProvider, organization_id: str, connection_id: Optional[str]
    ) -> bool:
        """Revoke upstream if possible, then delete the stored records.

        Returns False when there was no connection to remove.
        """
        connection = self.connections.get_connection(organization_id, adapter.name)
        if connection is None:
            if connection_id:
                return self.connections.delete_auxiliary(organization_id, adapter.name, connection_id)
            return False

        access_token = None
        if connection.access_token:
            try:
                access_token = self.cipher.reveal(connection.access_token)
            except (DecryptionError, ConfigurationError) as e:
                logger.warning(
                    "Could not decrypt access token for revocation",
                    provider=adapter.name,
                    organization_id=organization_id,
                    error=e.message,
                )
        if access_token:
            await adapter.revoke(access_token, organization_id)

        self.connections.delete_connection(organization_id, adapter.name)
        auxiliary_id = connection_id or connection.connection_id
        if auxiliary_id:
            self.connections.delete_auxiliary(organization_id, adapter.name, auxiliary_id)

        logger.info(
            "Removed OAuth connection",
            provider=adapter.name,
            organization_id=organization_id,
            connection_id=auxiliary_id,
        )
        return True

    # Client-obtained tokens

    async def save_tokens(
        self,
        identity: Optional[Identity],
        organization_id: str,
        provider: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scopes: Iterable[str] = (),
        account: Optional[AccountInfo] = None,
    ) -> Connection:
        """Persist tokens a client obtained itself, encrypting them server-side."""
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)
        if not access_token:
            raise InvalidArgumentError("accessToken is required")

        tokens = TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scopes=list(scopes) or adapter.get_scopes(),
            account=account or AccountInfo(),
        )
        if not tokens.account.email:
            tokens.account = await adapter.safe_account_info(access_token)
        return self.store_tokens(organization_id, adapter.name, tokens, connected_by=caller.uid)

    async def update_account_info(
        self, identity: Optional[Identity], organization_id: str, provider: str
    ) -> AccountInfo:
        """Re-fetch and store the account identity of a Box or Dropbox connection."""
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)
        if adapter.name not in ACCOUNT_INFO_PROVIDERS:
            raise InvalidArgumentError(f"Account info update is not supported for {adapter.display_name}")

        connection = self.get_connection(organization_id, adapter.name)
        if connection is None:
            raise NotFoundError(f"No {provider} connection found for organization {organization_id}")

        access_token = self.cipher.reveal(connection.access_token)
        account = await adapter.fetch_account_info(access_token)
        self.connections.update_connection(
            organization_id,
            adapter.name,
            {
                "accountEmail": account.email,
                "accountName": account.name,
                "accountId": account.account_id,
            },
        )
        logger.info(
            "Updated account info",
            provider=adapter.name,
            organization_id=organization_id,
            account_email=account.email,
        )
        return account

    # Feature access

    async def verify_access(
        self,
        identity: Optional[Identity],
        organization_id: str,
        provider: str,
        app: Optional[str] = None,
        features: Optional[Iterable[str]] = None,
    ) -> Dict[str, object]:
        """Check whether a connection holds the scopes an app's features need."""
        adapter = self.get_provider(provider)
        caller = self.authenticate(identity)
        require_organization(caller, organization_id)

        wanted = list(features or [])
        if app:
            wanted.extend(app_features(app, adapter.name))
        if not wanted:
            raise InvalidArgumentError("Either app or features must be provided")

        connection = self.connections.get_connection(organization_id, adapter.name)
        if connection is None:
            return {"hasAccess": False, "connected": False, "missingScopes": []}

        granted = granted_scopes(adapter.name, connection.scopes)
        missing = [scope for scope in required_scopes(adapter.name, wanted) if scope not in granted]
        return {
            "hasAccess": connection.is_active and not missing,
            "connected": True,
            "isActive": connection.is_active,
            "missingScopes": missing,
        }


def build_oauth_service(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
) -> OAuthService:
    """Wire the OAuth service for the API process or a worker."""
    settings = settings or get_settings()
    if store is None:
        from apps.api.database import SessionLocal

        store = DocumentStore(SessionLocal, batch_write_limit=settings.batch_write_limit)
    cipher = TokenCipher(settings.encryption_key)
    registry = build_registry(store, settings, cipher=cipher)
    return OAuthService(store, registry, settings, cipher=cipher)
