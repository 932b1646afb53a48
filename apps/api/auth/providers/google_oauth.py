"""Google OAuth provider."""

from typing import Dict

from apps.api.auth.providers.base import AccountInfo, OAuthProvider


class GoogleOAuthProvider(OAuthProvider):
    """Google OAuth 2.0 provider with Drive, Docs, Calendar and Meet scopes."""

    name = "google"
    display_name = "Google Drive"
    legacy_config_document = "google-drive-integration"

    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    revoke_endpoint = "https://oauth2.googleapis.com/revoke"

    @property
    def authorization_endpoint(self) -> str:
        return "https://accounts.google.com/o/oauth2/v2/auth"

    @property
    def token_endpoint(self) -> str:
        return "https://oauth2.googleapis.com/token"

    def get_additional_auth_params(self) -> Dict[str, str]:
        """Google-specific authorization parameters."""
        return {
            "access_type": "offline",  # Request refresh token
            "prompt": "consent",  # Re-issue refresh token on reconnect
        }

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._request("GET", self.userinfo_endpoint, headers=self.bearer(access_token))
        return AccountInfo(
            email=data.get("email", ""),
            name=data.get("name", ""),
            account_id=str(data.get("id", "")),
        )

    async def _revoke_token(self, access_token: str, organization_id: str) -> None:
        await self._request("POST", self.revoke_endpoint, data={"token": access_token})
