"""Tests for consolidating legacy connection records."""

from datetime import datetime, timedelta, timezone

from apps.api.services.connection_store import ConnectionStore
from apps.api.services.document_store import DocumentStore
from apps.api.services.migration import (
    collect_candidates,
    discover_organizations,
    migrate_connections,
)

CANONICAL_GOOGLE = "organizations/org1/cloudIntegrations/google"


class TestMigrateConnections:
    """Promotion, de-duplication and batching."""

    def test_duplicates_point_at_canonical_record(self, store):
        store.set(CANONICAL_GOOGLE, {"accountEmail": "a@example.com"})
        store.set("cloudIntegrations/org1_google", {"email": "A@Example.com"})
        store.set("organizations/org1/cloudIntegrations/google_user1", {"userEmail": "b@example.com"})

        report = migrate_connections(ConnectionStore(store), ["org1"], providers=["google"], dry_run=False)

        assert report.promoted == []
        assert report.marked == [{"path": "cloudIntegrations/org1_google", "migratedTo": CANONICAL_GOOGLE}]
        assert report.skipped == [
            {"path": "organizations/org1/cloudIntegrations/google_user1", "reason": "canonical_occupied"}
        ]
        assert store.get("cloudIntegrations/org1_google")["_migrated"] is True
        assert store.get(CANONICAL_GOOGLE) == {"accountEmail": "a@example.com"}

    def test_most_recent_legacy_record_is_promoted(self, store):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        older = "organizations/org1/integrationConfigs/box-integration"
        newer = "organizations/org1/boxConnections/abc"
        store.set(older, {"email": "box@example.com", "connectedAt": base})
        store.set(newer, {"email": "BOX@example.com", "connectedAt": base + timedelta(days=1), "accessToken": "t"})

        report = migrate_connections(ConnectionStore(store), ["org1"], providers=["box"], dry_run=False)

        target = "organizations/org1/cloudIntegrations/box"
        assert report.promoted == [{"from": newer, "to": target}]
        assert report.marked == [{"path": older, "migratedTo": target}]

        canonical = store.get(target)
        assert canonical["accountEmail"] == "BOX@example.com"
        assert canonical["organizationId"] == "org1"
        assert canonical["migratedFrom"] == newer
        assert store.get(newer)["_migratedTo"] == target
        assert store.get(older)["_migratedTo"] == target

    def test_dry_run_writes_nothing(self, store):
        store.set("cloudIntegrations/org1_dropbox", {"email": "d@example.com"})

        report = migrate_connections(ConnectionStore(store), dry_run=True)

        assert report.dry_run is True
        assert report.organizations == 1
        assert report.writes == 2
        assert report.batches == 0
        assert store.get("organizations/org1/cloudIntegrations/dropbox") is None
        assert "_migrated" not in store.get("cloudIntegrations/org1_dropbox")

    def test_second_run_finds_nothing(self, store):
        store.set("cloudIntegrations/org1_slack", {"email": "s@example.com"})
        connections = ConnectionStore(store)

        migrate_connections(connections, dry_run=False)
        report = migrate_connections(connections, dry_run=False)

        assert report.promoted == [] and report.marked == [] and report.writes == 0

    def test_writes_are_chunked_by_batch_limit(self, test_db):
        store = DocumentStore(test_db, batch_write_limit=2)
        for org in ("org1", "org2", "org3"):
            store.set(f"cloudIntegrations/{org}_google", {"email": f"{org}@example.com"})

        report = migrate_connections(ConnectionStore(store), providers=["google"], dry_run=False)

        assert report.writes == 6
        assert report.batches == 3
        for org in ("org1", "org2", "org3"):
            assert store.get(f"organizations/{org}/cloudIntegrations/google") is not None

    def test_report_serializes(self, store):
        report = migrate_connections(ConnectionStore(store), ["org9"])
        assert report.to_dict()["dryRun"] is True
        assert report.to_dict()["organizations"] == 1


class TestDiscovery:
    """Finding organizations and candidate records."""

    def test_discover_organizations(self, store):
        store.set("organizations/orgA/cloudIntegrations/google", {})
        store.set("cloudIntegrations/orgB_box", {})
        store.set("cloudIntegrations/not-a-connection", {})
        store.set("organizations/orgC/googleConnections/x", {})
        store.set("organizations/orgD/integrationConfigs/slack-integration", {})

        organizations = discover_organizations(ConnectionStore(store), ["google", "box", "slack"])

        assert organizations == ["orgA", "orgB", "orgC", "orgD"]

    def test_collect_candidates_skips_migrated(self, store):
        store.set(CANONICAL_GOOGLE, {})
        store.set("cloudIntegrations/org1_google", {"_migrated": True})
        store.set("organizations/org1/googleConnections/legacy", {})

        locations = [match.location for match in collect_candidates(ConnectionStore(store), "org1", "google")]

        assert locations == ["canonical", "googleConnections"]
