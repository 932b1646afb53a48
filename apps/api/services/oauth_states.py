"""Persistence for in-flight OAuth state tokens."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from apps.api.models.oauth import OAuthState
from apps.api.services.document_store import DocumentStore

STATE_COLLECTION = "oauthStates"


def generate_state() -> str:
    """64 hex characters from 32 random bytes."""
    return secrets.token_hex(32)


class OAuthStateStore:
    """Stores OAuth states keyed by the state value itself."""

    def __init__(self, store: DocumentStore, ttl_seconds: int = 3600):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)

    @staticmethod
    def path(state: str) -> str:
        return f"{STATE_COLLECTION}/{state}"

    def create(
        self,
        provider: str,
        organization_id: str,
        user_id: str,
        redirect_url: Optional[str],
        now: Optional[datetime] = None,
    ) -> OAuthState:
        now = now or datetime.now(timezone.utc)
        record = OAuthState(
            state=generate_state(),
            provider=provider,
            organization_id=organization_id,
            user_id=user_id,
            redirect_url=redirect_url,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.set(self.path(record.state), record.to_document())
        return record

    def get(self, state: str) -> Optional[OAuthState]:
        if not state or "/" in state:
            return None
        data = self.store.get(self.path(state))
        return OAuthState.model_validate(data) if data else None

    def delete(self, state: str) -> bool:
        return self.store.delete(self.path(state))
