"""Slack OAuth provider.

Slack bot tokens do not expire and come without a refresh token, so
"refreshing" a Slack connection only checks that the token still works.
Slack reports errors in the body (``{"ok": false, "error": ...}``) rather
than through HTTP status codes.
"""

from typing import Dict, List

from apps.api.auth.providers.base import AccountInfo, OAuthProvider, TokenSet, is_permanent_error
from apps.api.core.errors import ConfigurationError, ProviderError


class SlackOAuthProvider(OAuthProvider):
    """Slack OAuth v2 provider for workspace bot installations."""

    name = "slack"
    display_name = "Slack"
    legacy_config_document = "slack-config"
    scope_separator = ","

    auth_test_endpoint = "https://slack.com/api/auth.test"
    revoke_endpoint = "https://slack.com/api/auth.revoke"

    @property
    def authorization_endpoint(self) -> str:
        return "https://slack.com/oauth/v2/authorize"

    @property
    def token_endpoint(self) -> str:
        return "https://slack.com/api/oauth.v2.access"

    def _accepts_settings_document(self, document: dict) -> bool:
        # Event verification needs the signing secret alongside the client credentials
        return bool(document.get("signingSecret"))

    def _finish_config(self, client_id, client_secret, source, extra=None):
        if client_secret.startswith(("http://", "https://")):
            raise ConfigurationError(
                "Slack client secret looks like a URL; check the integration settings"
            )
        return super()._finish_config(client_id, client_secret, source, extra)

    async def _slack_call(self, method: str, url: str, **kwargs) -> Dict:
        data = await self._request(method, url, **kwargs)
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            raise ProviderError(
                f"Slack API error: {error}",
                permanent=is_permanent_error(error),
                error_code=error,
            )
        return data

    async def exchange_code(self, code: str, redirect_uri: str, organization_id: str) -> TokenSet:
        config = self.get_config(organization_id)
        data = await self._slack_call(
            "POST",
            self.token_endpoint,
            data={
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )

        access_token = (
            (data.get("bot") or {}).get("bot_access_token")
            or data.get("access_token")
            or (data.get("authed_user") or {}).get("access_token")
        )
        if not access_token:
            raise ProviderError("No access token received from Slack")

        team = data.get("team") or {}
        tokens = TokenSet(
            access_token=access_token,
            scopes=self._split_scopes(data.get("scope")),
            extra={
                "teamId": team.get("id", ""),
                "teamName": team.get("name", ""),
                "botUserId": data.get("bot_user_id", ""),
                "appId": data.get("app_id", ""),
            },
        )
        tokens.account = await self.safe_account_info(access_token)
        if not tokens.account.name:
            tokens.account.name = team.get("name", "")
        if not tokens.account.account_id:
            tokens.account.account_id = team.get("id", "")
        return tokens

    async def refresh(self, refresh_token: str, organization_id: str) -> TokenSet:
        """Validate a non-expiring token and hand it back unchanged."""
        await self._slack_call("POST", self.auth_test_endpoint, headers=self.bearer(refresh_token))
        return TokenSet(access_token=refresh_token, refresh_token=None, expires_at=None)

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._slack_call(
            "POST", self.auth_test_endpoint, headers=self.bearer(access_token)
        )
        return AccountInfo(
            email="",
            name=data.get("team", ""),
            account_id=data.get("team_id", ""),
        )

    async def _revoke_token(self, access_token: str, organization_id: str) -> None:
        await self._slack_call("POST", self.revoke_endpoint, headers=self.bearer(access_token))

    def _split_scopes(self, scope) -> List[str]:
        if not scope:
            return self.get_scopes()
        return sorted({item.strip() for item in scope.split(",") if item.strip()})
