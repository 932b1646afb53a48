"""Consolidate legacy connection records into the canonical location."""

import argparse
import sys

import structlog

from apps.api.config import get_settings
from apps.api.database import SessionLocal
from apps.api.services.connection_store import ConnectionStore
from apps.api.services.document_store import DocumentStore
from apps.api.services.migration import DEFAULT_PROVIDERS, migrate_connections

logger = structlog.get_logger()


def main(organization_ids: list[str], providers: list[str], execute: bool = False) -> int:
    """
    Migrate connection records.

    Args:
        organization_ids: Organizations to migrate (empty for all)
        providers: Providers to migrate
        execute: Write changes instead of reporting them
    """
    settings = get_settings()
    store = DocumentStore(SessionLocal, batch_write_limit=settings.batch_write_limit)
    logger.info("Starting connection migration", organizations=organization_ids or "all", execute=execute)

    report = migrate_connections(
        ConnectionStore(store),
        organization_ids=organization_ids or None,
        providers=providers,
        dry_run=not execute,
    )

    mode = "Migration completed" if execute else "Dry run completed (no changes written)"
    print(f"\n✅ {mode}")
    print(f"   🏢 Organizations scanned: {report.organizations}")
    print(f"   ⬆️  Records promoted: {len(report.promoted)}")
    print(f"   🏷️  Duplicates marked: {len(report.marked)}")
    print(f"   ✍️  Writes: {report.writes} in {report.batches} batch(es)")

    for item in report.promoted:
        print(f"   + {item['from']} -> {item['to']}")
    for item in report.marked:
        print(f"   ~ {item['path']} -> {item['migratedTo']}")

    if report.skipped:
        print(f"   ⚠️  Skipped: {len(report.skipped)}")
        for item in report.skipped:
            print(f"   ! {item['path']} ({item['reason']})")

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Migrate legacy OAuth connection records")
    parser.add_argument(
        "--org",
        action="append",
        default=[],
        help="Organization id to migrate (repeatable; default: all)",
    )
    parser.add_argument(
        "--provider",
        action="append",
        choices=DEFAULT_PROVIDERS,
        help="Provider to migrate (repeatable; default: all)",
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Write changes (default is a dry run)",
    )

    args = parser.parse_args()

    exit_code = main(args.org, args.provider or list(DEFAULT_PROVIDERS), execute=args.execute)
    sys.exit(exit_code)
