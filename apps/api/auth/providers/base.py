"""Base OAuth provider adapter."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from apps.api.config import Settings
from apps.api.core.errors import ConfigurationError, OAuthServiceError, ProviderError
from apps.api.core.secrets import TokenCipher
from apps.api.auth.providers.features import all_required_scopes
from apps.api.services.document_store import DocumentStore

logger = structlog.get_logger()

# OAuth error codes that will never succeed on retry
PERMANENT_ERROR_CODES = frozenset(
    {
        "invalid_grant",
        "invalid_client",
        "unauthorized_client",
        "token_revoked",
        "invalid_refresh_token",
        "account_inactive",
        "token_expired",
        "invalid_auth",
        "not_authed",
    }
)
PERMANENT_ERROR_MESSAGES = ("token has been expired or revoked",)


@dataclass
class AccountInfo:
    """Identity of the account that granted access."""

    email: str = ""
    name: str = ""
    account_id: str = ""


@dataclass
class TokenSet:
    """Tokens returned by a provider's token endpoint."""

    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    account: AccountInfo = field(default_factory=AccountInfo)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    """OAuth client credentials and where they were found."""

    client_id: str
    client_secret: str = field(repr=False)
    source: str = "environment"
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)


def is_permanent_error(error_code: Optional[str], description: str = "") -> bool:
    if error_code and error_code in PERMANENT_ERROR_CODES:
        return True
    description = (description or "").lower()
    return any(message in description for message in PERMANENT_ERROR_MESSAGES)


def provider_error_from_response(display_name: str, response: httpx.Response) -> ProviderError:
    """Turn an HTTP error response into a classified ProviderError."""
    error_code = None
    description = ""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error_code = error.get(".tag")
        elif isinstance(error, str):
            error_code = error
        description = body.get("error_description") or body.get("error_summary") or ""
    else:
        description = response.text[:200]

    permanent = is_permanent_error(error_code, description)
    detail = description or error_code or response.reason_phrase
    return ProviderError(
        f"{display_name} request failed ({response.status_code}): {detail}",
        permanent=permanent,
        status_code=response.status_code,
        error_code=error_code,
    )


class OAuthProvider(ABC):
    """Base class for OAuth 2.0 authorization-code providers."""

    name: str = ""
    display_name: str = ""
    # Document under organizations/{org}/integrationConfigs holding older credentials
    legacy_config_document: str = ""
    client_id_keys: Tuple[str, ...] = ("clientId",)
    client_secret_keys: Tuple[str, ...] = ("clientSecret",)
    scope_separator = " "

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        cipher: Optional[TokenCipher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self.cipher = cipher or TokenCipher(settings.encryption_key)
        self._transport = transport

    @property
    @abstractmethod
    def authorization_endpoint(self) -> str:
        """OAuth authorization URL."""
        pass

    @property
    @abstractmethod
    def token_endpoint(self) -> str:
        """OAuth token exchange URL."""
        pass

    @abstractmethod
    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        """Look up the identity of the account behind an access token."""
        pass

    async def _revoke_token(self, access_token: str, organization_id: str) -> None:
        """Provider-specific revocation call; providers without one do nothing."""
        return None

    def get_scopes(self) -> List[str]:
        """Scopes requested during authorization."""
        return all_required_scopes(self.name)

    def get_additional_auth_params(self) -> Dict[str, str]:
        """Get provider-specific authorization parameters.

        Override this method to add provider-specific parameters.
        """
        return {}

    def describe(self) -> Dict[str, str]:
        return {"name": self.name, "displayName": self.display_name, "type": "oauth2"}

    # Configuration

    def get_config(self, organization_id: str) -> ProviderConfig:
        """Resolve OAuth client credentials for an organization.

        Checked in order: the organization's integration settings, its legacy
        integration config document, then process settings.

        Raises:
            ConfigurationError: If no location holds a complete client id/secret
        """
        settings_path = f"organizations/{organization_id}/integrationSettings/{self.name}"
        document = self.store.get(settings_path)
        if document and document.get("isConfigured"):
            client_id, client_secret = self._credentials_from(document)
            if client_id and client_secret and self._accepts_settings_document(document):
                return self._finish_config(
                    client_id,
                    self.cipher.reveal(client_secret),
                    source="integrationSettings",
                    extra=document,
                )

        legacy_path = None
        if self.legacy_config_document:
            legacy_path = (
                f"organizations/{organization_id}/integrationConfigs/{self.legacy_config_document}"
            )
            document = self.store.get(legacy_path)
            if document:
                credentials = document.get("credentials")
                source = credentials if isinstance(credentials, dict) else document
                client_id, client_secret = self._credentials_from(source)
                if client_id and client_secret:
                    return self._finish_config(
                        client_id,
                        self.cipher.reveal(client_secret),
                        source="integrationConfigs",
                        extra=document,
                    )

        client_id, client_secret = self.settings.provider_credentials(self.name)
        if client_id and client_secret:
            return self._finish_config(client_id, client_secret, source="environment")

        checked = [settings_path, legacy_path, f"{self.name.upper()}_CLIENT_ID/SECRET"]
        raise ConfigurationError(
            f"{self.display_name} OAuth credentials not configured for organization "
            f"{organization_id}. Checked: {', '.join(location for location in checked if location)}"
        )

    def _credentials_from(self, document: dict) -> Tuple[Optional[str], Optional[str]]:
        client_id = next((document[key] for key in self.client_id_keys if document.get(key)), None)
        client_secret = next(
            (document[key] for key in self.client_secret_keys if document.get(key)), None
        )
        return client_id, client_secret

    def _accepts_settings_document(self, document: dict) -> bool:
        return True

    def _finish_config(
        self, client_id: str, client_secret: str, source: str, extra: Optional[dict] = None
    ) -> ProviderConfig:
        logger.debug("Resolved OAuth credentials", provider=self.name, source=source)
        return ProviderConfig(client_id, client_secret, source=source, extra=extra or {})

    # Authorization flow

    def build_authorization_url(self, organization_id: str, redirect_uri: str, state: str) -> str:
        """Build the provider consent URL.

        Args:
            organization_id: Organization whose OAuth client is used
            redirect_uri: Where the provider sends the browser back
            state: Opaque CSRF state token

        Returns:
            Full authorization URL
        """
        config = self.get_config(organization_id)
        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.get_scopes()),
            "state": state,
        }
        params.update(self.get_additional_auth_params())

        query_params = httpx.QueryParams(params)
        return f"{self.authorization_endpoint}?{query_params}"

    async def exchange_code(self, code: str, redirect_uri: str, organization_id: str) -> TokenSet:
        """Exchange an authorization code for tokens and resolve the account identity.

        Raises:
            ProviderError: If the exchange fails or returns no access token
        """
        config = self.get_config(organization_id)
        data = await self._post_token(
            {
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        tokens = self._parse_token_response(data)
        tokens.account = await self.safe_account_info(tokens.access_token)
        return tokens

    async def refresh(self, refresh_token: str, organization_id: str) -> TokenSet:
        """Use a refresh token to obtain a new access token.

        The previous refresh token is kept when the provider does not rotate it.
        """
        config = self.get_config(organization_id)
        data = await self._post_token(
            {
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        tokens = self._parse_token_response(data)
        tokens.refresh_token = tokens.refresh_token or refresh_token
        return tokens

    async def revoke(self, access_token: str, organization_id: str) -> None:
        """Best-effort revocation; failures are logged and swallowed."""
        try:
            await self._revoke_token(access_token, organization_id)
            logger.info("Revoked provider token", provider=self.name, organization_id=organization_id)
        except (OAuthServiceError, httpx.HTTPError) as e:
            logger.warning(
                "Provider token revocation failed",
                provider=self.name,
                organization_id=organization_id,
                error=str(e),
            )

    async def safe_account_info(self, access_token: str) -> AccountInfo:
        """Account identity, or an empty AccountInfo when the lookup fails."""
        try:
            return await self.fetch_account_info(access_token)
        except (OAuthServiceError, httpx.HTTPError, KeyError, ValueError) as e:
            # Log but don't fail the connection if the identity lookup fails
            logger.warning("Failed to fetch account info", provider=self.name, error=str(e))
            return AccountInfo()

    def _parse_token_response(self, data: dict) -> TokenSet:
        access_token = data.get("access_token")
        if not access_token:
            raise ProviderError(f"No access token received from {self.display_name}")

        scope = data.get("scope")
        scopes = sorted(set(scope.replace(",", " ").split())) if scope else self.get_scopes()

        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=self._expires_at(data.get("expires_in")),
            scopes=scopes,
        )

    @staticmethod
    def _expires_at(expires_in: Optional[Any]) -> Optional[datetime]:
        if expires_in in (None, ""):
            return None
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"Invalid expires_in in token response: {expires_in!r}") from e
        return datetime.now(timezone.utc) + timedelta(seconds=seconds)

    # HTTP

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, timeout=self.settings.http_timeout_seconds
        )

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        """Send a request and return its JSON body, classifying every failure."""
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.display_name} request failed: {e}") from e

        if response.is_error:
            raise provider_error_from_response(self.display_name, response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.display_name} returned an invalid response") from e

    async def _post_token(self, data: Dict[str, str]) -> dict:
        return await self._request(
            "POST", self.token_endpoint, data=data, headers={"Accept": "application/json"}
        )

    @staticmethod
    def bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}
