"""OAuth providers for Google, Box, Dropbox and Slack."""

from apps.api.auth.providers.base import AccountInfo, OAuthProvider, ProviderConfig, TokenSet
from apps.api.auth.providers.box_oauth import BoxOAuthProvider
from apps.api.auth.providers.dropbox_oauth import DropboxOAuthProvider
from apps.api.auth.providers.google_oauth import GoogleOAuthProvider
from apps.api.auth.providers.registry import ProviderRegistry, build_registry
from apps.api.auth.providers.slack_oauth import SlackOAuthProvider

__all__ = [
    "AccountInfo",
    "BoxOAuthProvider",
    "DropboxOAuthProvider",
    "GoogleOAuthProvider",
    "OAuthProvider",
    "ProviderConfig",
    "ProviderRegistry",
    "SlackOAuthProvider",
    "TokenSet",
    "build_registry",
]
