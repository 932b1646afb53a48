"""Batch migration of connection records written by older schema versions.

For every organization and provider, records found in the canonical location,
the legacy locations and the legacy per-provider collections are grouped by
account email. One record per account survives (canonical first, then the
most recently updated); a surviving legacy record is copied into the empty
canonical slot. Every other record is marked ``_migrated`` with a pointer to
the survivor. Nothing is deleted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

import structlog

from apps.api.services.connection_store import (
    LEGACY_LOCATIONS,
    MIGRATED_MARKER,
    ConnectionMatch,
    ConnectionStore,
    group_by_account,
    migration_marker,
    select_survivor,
)
from apps.api.services.document_store import WriteBatch

logger = structlog.get_logger()

DEFAULT_PROVIDERS = ("google", "box", "dropbox", "slack")

# Per-provider collections used before connections moved to cloudIntegrations
LEGACY_COLLECTIONS = {
    "google": "googleConnections",
    "box": "boxConnections",
}


@dataclass
class MigrationReport:
    """What a migration run did (or, for a dry run, would do)."""

    dry_run: bool
    organizations: int = 0
    promoted: List[dict] = field(default_factory=list)
    marked: List[dict] = field(default_factory=list)
    skipped: List[dict] = field(default_factory=list)
    writes: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "organizations": self.organizations,
            "promoted": self.promoted,
            "marked": self.marked,
            "skipped": self.skipped,
            "writes": self.writes,
            "batches": self.batches,
        }


class _BatchWriter:
    """Queues writes and commits them in chunks below the store's batch limit."""

    def __init__(self, connections: ConnectionStore, report: MigrationReport):
        self._store = connections.store
        self._report = report
        self._batch: Optional[WriteBatch] = None if report.dry_run else self._store.batch()

    def set(self, path: str, data: dict) -> None:
        self._report.writes += 1
        if self._batch is not None:
            self._batch.set(path, data, merge=True)
            self._flush_if_full()

    def update(self, path: str, fields: dict) -> None:
        self._report.writes += 1
        if self._batch is not None:
            self._batch.update(path, fields)
            self._flush_if_full()

    def _flush_if_full(self) -> None:
        if self._batch.is_full:
            self.flush()

    def flush(self) -> None:
        if self._batch is not None and len(self._batch):
            self._batch.commit()
            self._report.batches += 1
            self._batch = self._store.batch()


def discover_organizations(connections: ConnectionStore, providers: Iterable[str]) -> List[str]:
    """Organization ids that have any connection record, current or legacy."""
    store = connections.store
    providers = tuple(providers)
    organizations: Set[str] = set()

    for document in store.collection_group("cloudIntegrations"):
        segments = document.path.split("/")
        if segments[0] == "organizations" and len(segments) == 4:
            organizations.add(segments[1])
        elif len(segments) == 2:
            # Global legacy records are named {org}_{provider}
            org, _, provider = segments[1].rpartition("_")
            if org and provider in providers:
                organizations.add(org)

    for collection in ("integrationConfigs", *LEGACY_COLLECTIONS.values()):
        for document in store.collection_group(collection):
            segments = document.path.split("/")
            if segments[0] == "organizations" and len(segments) == 4:
                organizations.add(segments[1])

    return sorted(organizations)


def collect_candidates(
    connections: ConnectionStore, organization_id: str, provider: str
) -> List[ConnectionMatch]:
    """Every unmigrated record of one organization's connection to one provider."""
    store = connections.store
    matches: List[ConnectionMatch] = []
    seen: Set[str] = set()

    def consider(document, location: str) -> None:
        if document is None or document.path in seen or document.data.get(MIGRATED_MARKER):
            return
        seen.add(document.path)
        matches.append(ConnectionMatch.from_document(document, location))

    consider(store.get_document(connections.canonical_path(organization_id, provider)), "canonical")

    for location in LEGACY_LOCATIONS:
        if location.requires_user:
            # Per-user records are discovered by id prefix below
            continue
        consider(store.get_document(location.path(organization_id, provider)), location.label)

    for document in store.list_collection(
        f"organizations/{organization_id}/cloudIntegrations", id_prefix=f"{provider}_"
    ):
        consider(document, "per-user")

    legacy_collection = LEGACY_COLLECTIONS.get(provider)
    if legacy_collection:
        for document in store.list_collection(f"organizations/{organization_id}/{legacy_collection}"):
            consider(document, legacy_collection)

    return matches


def migrate_connections(
    connections: ConnectionStore,
    organization_ids: Optional[Iterable[str]] = None,
    providers: Iterable[str] = DEFAULT_PROVIDERS,
    dry_run: bool = True,
) -> MigrationReport:
    """Consolidate connection records into the canonical location.

    Args:
        connections: Connection store to migrate
        organization_ids: Organizations to process (default: all discovered)
        providers: Providers to process
        dry_run: Report without writing

    Returns:
        MigrationReport describing promotions and markings
    """
    providers = tuple(providers)
    report = MigrationReport(dry_run=dry_run)
    writer = _BatchWriter(connections, report)
    now = datetime.now(timezone.utc)

    organizations = list(organization_ids) if organization_ids else discover_organizations(connections, providers)
    report.organizations = len(organizations)

    for organization_id in organizations:
        for provider in providers:
            matches = collect_candidates(connections, organization_id, provider)
            if not matches:
                continue

            target = connections.canonical_path(organization_id, provider)
            canonical_taken = any(match.is_canonical for match in matches)

            for group in group_by_account(matches).values():
                survivor = select_survivor(group)
                survivor_path = survivor.path

                if not survivor.is_canonical:
                    if canonical_taken:
                        # A different account already holds the canonical slot
                        report.skipped.append({"path": survivor.path, "reason": "canonical_occupied"})
                    else:
                        writer.set(
                            target,
                            connections.promoted_document(survivor, organization_id, provider, now),
                        )
                        writer.update(survivor.path, migration_marker(target, now))
                        report.promoted.append({"from": survivor.path, "to": target})
                        survivor_path = target
                        canonical_taken = True

                for duplicate in group:
                    if duplicate is survivor:
                        continue
                    writer.update(duplicate.path, migration_marker(survivor_path, now))
                    report.marked.append({"path": duplicate.path, "migratedTo": survivor_path})

    writer.flush()
    logger.info(
        "Connection migration finished",
        dry_run=dry_run,
        organizations=report.organizations,
        promoted=len(report.promoted),
        marked=len(report.marked),
        skipped=len(report.skipped),
        writes=report.writes,
    )
    return report
