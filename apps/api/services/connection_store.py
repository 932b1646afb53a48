"""Connection persistence with fallback to locations written by older schemas."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from apps.api.models.oauth import Connection
from apps.api.services.document_store import DocumentStore, StoredDocument

logger = structlog.get_logger()

CANONICAL_TEMPLATE = "organizations/{org}/cloudIntegrations/{provider}"

# Providers that keep one record per workspace/account next to the canonical one
AUXILIARY_COLLECTIONS = {
    "slack": "slackConnections",
    "dropbox": "dropboxConnections",
}

MIGRATED_MARKER = "_migrated"
MIGRATION_FIELDS = (MIGRATED_MARKER, "_migratedTo", "_migratedAt")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class LegacyLocation:
    """A place an older schema version stored connections."""

    template: str
    priority: int
    label: str
    requires_user: bool = False

    def path(self, organization_id: str, provider: str, user_id: Optional[str] = None) -> Optional[str]:
        if self.requires_user and not user_id:
            return None
        return self.template.format(org=organization_id, provider=provider, user=user_id)


LEGACY_LOCATIONS: Tuple[LegacyLocation, ...] = (
    LegacyLocation("cloudIntegrations/{org}_{provider}", 1, "global"),
    LegacyLocation(
        "organizations/{org}/integrationConfigs/{provider}-integration", 2, "organization-legacy"
    ),
    LegacyLocation(
        "organizations/{org}/cloudIntegrations/{provider}_{user}", 3, "per-user", requires_user=True
    ),
)


@dataclass
class ConnectionMatch:
    """A stored connection record and where it was found."""

    path: str
    location: str
    data: dict
    updated_at: Optional[datetime] = None

    @property
    def is_canonical(self) -> bool:
        return self.location == "canonical"

    @property
    def account_email(self) -> str:
        return (self.data.get("accountEmail") or self.data.get("email") or self.data.get("userEmail") or "").strip().lower()

    @property
    def last_updated(self) -> datetime:
        candidates = [self.updated_at]
        for key in ("lastRefreshedAt", "updatedAt", "connectedAt", "createdAt"):
            value = self.data.get(key)
            if isinstance(value, datetime):
                candidates.append(value)
        stamps = [
            stamp if stamp.tzinfo else stamp.replace(tzinfo=timezone.utc)
            for stamp in candidates
            if stamp is not None
        ]
        return max(stamps, default=_EPOCH)

    def to_connection(self, provider: Optional[str] = None) -> Connection:
        return Connection.from_document(self.data, provider=provider)

    @classmethod
    def from_document(cls, document: StoredDocument, location: str) -> "ConnectionMatch":
        return cls(document.path, location, document.data, document.updated_at)


def select_survivor(matches: Iterable[ConnectionMatch]) -> ConnectionMatch:
    """Pick the record to keep among duplicates: canonical first, then most recently updated."""
    return max(matches, key=lambda match: (match.is_canonical, match.last_updated))


def group_by_account(matches: Iterable[ConnectionMatch]) -> Dict[str, List[ConnectionMatch]]:
    """Group records by case-insensitive account email; records without one stand alone."""
    groups: Dict[str, List[ConnectionMatch]] = {}
    for match in matches:
        key = match.account_email or f"path:{match.path}"
        groups.setdefault(key, []).append(match)
    return groups


def migration_marker(target_path: str, now: Optional[datetime] = None) -> dict:
    return {
        MIGRATED_MARKER: True,
        "_migratedTo": target_path,
        "_migratedAt": now or datetime.now(timezone.utc),
    }


class ConnectionStore:
    """Reads and writes Connection records in the document store."""

    def __init__(
        self,
        store: DocumentStore,
        legacy_locations: Tuple[LegacyLocation, ...] = LEGACY_LOCATIONS,
    ):
        self.store = store
        self.legacy_locations = tuple(sorted(legacy_locations, key=lambda location: location.priority))

    @staticmethod
    def canonical_path(organization_id: str, provider: str) -> str:
        return CANONICAL_TEMPLATE.format(org=organization_id, provider=provider)

    def find_connection(
        self, organization_id: str, provider: str, user_id: Optional[str] = None
    ) -> Optional[ConnectionMatch]:
        """Find a connection, canonical location first, then legacy locations in order.

        Records already marked as migrated are skipped.
        """
        document = self.store.get_document(self.canonical_path(organization_id, provider))
        if document and not document.data.get(MIGRATED_MARKER):
            return ConnectionMatch.from_document(document, "canonical")

        for location in self.legacy_locations:
            path = location.path(organization_id, provider, user_id)
            if path is None:
                continue
            document = self.store.get_document(path)
            if document and not document.data.get(MIGRATED_MARKER):
                logger.info(
                    "Found connection in legacy location",
                    organization_id=organization_id,
                    provider=provider,
                    location=location.label,
                )
                return ConnectionMatch.from_document(document, location.label)
        return None

    def get_connection(self, organization_id: str, provider: str) -> Optional[Connection]:
        """Load the canonical connection only."""
        data = self.store.get(self.canonical_path(organization_id, provider))
        if not data or data.get(MIGRATED_MARKER):
            return None
        return Connection.from_document(data, provider=provider)

    def upsert_connection(self, organization_id: str, provider: str, fields: dict) -> None:
        """Merge fields into the canonical record.

        A ``refreshToken`` of None is dropped so an existing refresh token is
        never overwritten by an absent one.
        """
        fields = dict(fields)
        if fields.get("refreshToken") is None:
            fields.pop("refreshToken", None)
        fields.setdefault("organizationId", organization_id)
        fields.setdefault("provider", provider)
        self.store.set(self.canonical_path(organization_id, provider), fields, merge=True)

    def update_connection(self, organization_id: str, provider: str, fields: dict) -> None:
        self.store.update(self.canonical_path(organization_id, provider), fields)

    def delete_connection(self, organization_id: str, provider: str) -> bool:
        return self.store.delete(self.canonical_path(organization_id, provider))

    def promote(self, match: ConnectionMatch, organization_id: str, provider: str) -> Connection:
        """Copy a legacy record into the canonical location and mark the original migrated."""
        if match.is_canonical:
            return match.to_connection(provider)

        target = self.canonical_path(organization_id, provider)
        now = datetime.now(timezone.utc)
        data = self.promoted_document(match, organization_id, provider, now)

        batch = self.store.batch()
        batch.set(target, data, merge=True)
        batch.update(match.path, migration_marker(target, now))
        batch.commit()

        logger.info(
            "Promoted legacy connection",
            organization_id=organization_id,
            provider=provider,
            source=match.location,
        )
        return Connection.from_document(data, provider=provider)

    @staticmethod
    def promoted_document(
        match: ConnectionMatch, organization_id: str, provider: str, now: datetime
    ) -> dict:
        """Canonical-schema copy of a legacy record."""
        data = {key: value for key, value in match.data.items() if key not in MIGRATION_FIELDS}
        data.update(match.to_connection(provider).to_document())
        data.update(
            {
                "organizationId": organization_id,
                "provider": provider,
                "migratedFrom": match.path,
                "migratedAt": now,
            }
        )
        return data

    def list_connections(self, organization_id: str, providers: Iterable[str]) -> List[Connection]:
        """Canonical connections of an organization for the given providers."""
        connections = []
        for provider in providers:
            connection = self.get_connection(organization_id, provider)
            if connection is not None:
                connections.append(connection)
        return connections

    def iter_connections(self, provider: str) -> Iterator[Tuple[str, Connection]]:
        """Yield (organization_id, connection) for every canonical record of a provider."""
        for document in self.store.collection_group("cloudIntegrations"):
            segments = document.path.split("/")
            if len(segments) != 4 or segments[0] != "organizations" or segments[3] != provider:
                continue
            if document.data.get(MIGRATED_MARKER):
                continue
            try:
                connection = Connection.from_document(document.data, provider=provider)
            except ValidationError as e:
                logger.warning(
                    "Skipping unreadable connection record",
                    path=document.path,
                    errors=e.error_count(),
                )
                continue
            yield segments[1], connection

    # Auxiliary per-workspace / per-account records

    def auxiliary_collection(self, organization_id: str, provider: str) -> Optional[str]:
        collection = AUXILIARY_COLLECTIONS.get(provider)
        if collection is None:
            return None
        return f"organizations/{organization_id}/{collection}"

    def add_auxiliary(self, organization_id: str, provider: str, data: dict) -> Optional[str]:
        collection = self.auxiliary_collection(organization_id, provider)
        if collection is None:
            return None
        return self.store.add(collection, data)

    def delete_auxiliary(self, organization_id: str, provider: str, connection_id: str) -> bool:
        collection = self.auxiliary_collection(organization_id, provider)
        if collection is None or not connection_id:
            return False
        return self.store.delete(f"{collection}/{connection_id}")
