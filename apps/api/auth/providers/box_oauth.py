"""Box OAuth provider."""

from typing import List

from apps.api.auth.providers.base import AccountInfo, OAuthProvider

# Box accepts a single scope per authorization request
BOX_CANONICAL_SCOPE = "root_readwrite"


def collapse_box_scopes(scopes: List[str]) -> List[str]:
    """Reduce a scope set to the one scope Box will accept."""
    if not scopes:
        return [BOX_CANONICAL_SCOPE]
    if BOX_CANONICAL_SCOPE in scopes:
        return [BOX_CANONICAL_SCOPE]
    return [sorted(scopes)[0]]


class BoxOAuthProvider(OAuthProvider):
    """Box OAuth 2.0 provider."""

    name = "box"
    display_name = "Box"
    legacy_config_document = "box-config"

    user_endpoint = "https://api.box.com/2.0/users/me"
    revoke_endpoint = "https://api.box.com/oauth2/revoke"

    @property
    def authorization_endpoint(self) -> str:
        return "https://account.box.com/api/oauth2/authorize"

    @property
    def token_endpoint(self) -> str:
        return "https://api.box.com/oauth2/token"

    def get_scopes(self) -> List[str]:
        return collapse_box_scopes(super().get_scopes())

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._request("GET", self.user_endpoint, headers=self.bearer(access_token))
        return AccountInfo(
            email=data.get("login", ""),
            name=data.get("name", ""),
            account_id=str(data.get("id", "")),
        )

    async def _revoke_token(self, access_token: str, organization_id: str) -> None:
        config = self.get_config(organization_id)
        await self._request(
            "POST",
            self.revoke_endpoint,
            data={
                "token": access_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
        )
