"""Dropbox OAuth provider."""

from typing import Dict

from apps.api.auth.providers.base import AccountInfo, OAuthProvider


class DropboxOAuthProvider(OAuthProvider):
    """Dropbox OAuth 2.0 provider with offline (refreshable) access."""

    name = "dropbox"
    display_name = "Dropbox"
    legacy_config_document = "dropbox-config"
    client_id_keys = ("clientId", "appKey")
    client_secret_keys = ("clientSecret", "appSecret")

    account_endpoint = "https://api.dropboxapi.com/2/users/get_current_account"
    revoke_endpoint = "https://api.dropboxapi.com/2/auth/token/revoke"

    @property
    def authorization_endpoint(self) -> str:
        return "https://www.dropbox.com/oauth2/authorize"

    @property
    def token_endpoint(self) -> str:
        return "https://api.dropboxapi.com/oauth2/token"

    def get_additional_auth_params(self) -> Dict[str, str]:
        """Dropbox only issues refresh tokens for offline access."""
        return {"token_access_type": "offline"}

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._request("POST", self.account_endpoint, headers=self.bearer(access_token))
        name = data.get("name") or {}
        return AccountInfo(
            email=data.get("email", ""),
            name=name.get("display_name", ""),
            account_id=data.get("account_id", ""),
        )

    async def _revoke_token(self, access_token: str, organization_id: str) -> None:
        await self._request("POST", self.revoke_endpoint, headers=self.bearer(access_token))
