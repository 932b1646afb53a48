"""Connection and OAuth state records as stored in the document store."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Older schema versions used different field names for the same data
LEGACY_FIELD_ALIASES = {
    "accountEmail": ("email", "userEmail"),
    "accountName": ("name", "userName"),
    "accountId": ("id",),
    "tokenExpiresAt": ("expiresAt", "expiryDate"),
    "connectedAt": ("createdAt",),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StoredModel(BaseModel):
    """Base for records persisted with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """Serialize for the document store, dropping unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Connection(StoredModel):
    """One organization's authorization with one provider."""

    organization_id: str = ""
    provider: str
    account_email: str = ""
    account_name: str = ""
    account_id: str = ""
    access_token: str = Field(default="", repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)
    is_active: bool = True
    connected_at: Optional[datetime] = None
    connected_by: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    consecutive_refresh_failures: int = 0
    requires_reconnection: bool = False
    last_refresh_error: Optional[str] = None
    last_refresh_error_at: Optional[datetime] = None
    connection_id: Optional[str] = None

    @field_validator(
        "token_expires_at",
        "connected_at",
        "last_refreshed_at",
        "last_refresh_error_at",
        mode="after",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = value.replace(",", " ").split()
        return sorted({str(scope) for scope in value if scope})

    @classmethod
    def from_document(cls, data: dict, provider: Optional[str] = None) -> "Connection":
        """Build a Connection from stored data, accepting legacy field names."""
        normalized = dict(data)
        for field, aliases in LEGACY_FIELD_ALIASES.items():
            if normalized.get(field) in (None, ""):
                for alias in aliases:
                    if normalized.get(alias) not in (None, ""):
                        normalized[field] = normalized[alias]
                        break

        if "scopes" not in normalized and "scope" in normalized:
            normalized["scopes"] = normalized["scope"]

        encrypted = normalized.get("encryptedTokens")
        if isinstance(encrypted, dict):
            for key, legacy_key in (("accessToken", "access_token"), ("refreshToken", "refresh_token")):
                value = encrypted.get(key) or encrypted.get(legacy_key)
                if value and not normalized.get(key):
                    normalized[key] = value

        if provider and not normalized.get("provider"):
            normalized["provider"] = provider

        for key in ("accountEmail", "accountName", "accountId", "accessToken"):
            if normalized.get(key) is None:
                normalized.pop(key, None)
            else:
                normalized[key] = str(normalized[key])

        return cls.model_validate(normalized)

    def expires_within(self, window_seconds: float, now: Optional[datetime] = None) -> bool:
        """Whether the access token expires within the window (unknown expiry never does)."""
        if self.token_expires_at is None:
            return False
        now = now or utcnow()
        return (self.token_expires_at - now).total_seconds() <= window_seconds


class ConnectionSummary(StoredModel):
    """Token-free view of a connection for listing endpoints."""

    provider: str
    account_email: str = ""
    account_name: str = ""
    is_active: bool = True
    requires_reconnection: bool = False
    token_expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)

    @classmethod
    def from_connection(cls, connection: Connection) -> "ConnectionSummary":
        return cls(
            provider=connection.provider,
            account_email=connection.account_email,
            account_name=connection.account_name,
            is_active=connection.is_active,
            requires_reconnection=connection.requires_reconnection,
            token_expires_at=connection.token_expires_at,
            connected_at=connection.connected_at,
            scopes=connection.scopes,
        )


class OAuthState(StoredModel):
    """Short-lived correlation record for one in-flight authorization attempt."""

    state: str
    provider: str
    organization_id: str
    user_id: str
    redirect_url: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    @field_validator("created_at", "expires_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at
