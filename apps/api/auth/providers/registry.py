"""Provider registry, built once at startup and injected into the OAuth service."""

from typing import Dict, Iterable, List, Optional

import httpx

from apps.api.auth.providers.base import OAuthProvider
from apps.api.auth.providers.box_oauth import BoxOAuthProvider
from apps.api.auth.providers.dropbox_oauth import DropboxOAuthProvider
from apps.api.auth.providers.google_oauth import GoogleOAuthProvider
from apps.api.auth.providers.slack_oauth import SlackOAuthProvider
from apps.api.config import Settings
from apps.api.core.secrets import TokenCipher
from apps.api.services.document_store import DocumentStore

DEFAULT_PROVIDERS = (
    GoogleOAuthProvider,
    BoxOAuthProvider,
    DropboxOAuthProvider,
    SlackOAuthProvider,
)


class ProviderRegistry:
    """Maps provider names to adapter instances."""

    def __init__(self, providers: Iterable[OAuthProvider] = ()):
        self._providers: Dict[str, OAuthProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider

    def get_provider(self, name: str) -> Optional[OAuthProvider]:
        return self._providers.get((name or "").lower())

    def has_provider(self, name: str) -> bool:
        return self.get_provider(name) is not None

    @property
    def names(self) -> List[str]:
        return list(self._providers)

    def list_providers(self) -> List[Dict[str, str]]:
        return [provider.describe() for provider in self._providers.values()]


def build_registry(
    store: DocumentStore,
    settings: Settings,
    cipher: Optional[TokenCipher] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Create a registry holding an adapter for every supported provider."""
    cipher = cipher or TokenCipher(settings.encryption_key)
    return ProviderRegistry(
        provider_class(store, settings, cipher=cipher, transport=transport)
        for provider_class in DEFAULT_PROVIDERS
    )
