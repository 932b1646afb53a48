"""Celery scheduled task for proactive token refresh."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog

from apps.api.core.errors import OAuthServiceError
from apps.api.services.oauth_service import OAuthService, build_oauth_service
from apps.worker.celery_app import celery_app

logger = structlog.get_logger()


async def run_refresh_sweep(service: OAuthService, now: Optional[datetime] = None) -> dict:
    """Refresh every active connection whose token expires inside the refresh window.

    Connections are processed one at a time. A failed refresh is recorded on
    the connection by the service and retried on the next run.

    Returns:
        Counts of refreshed, failed, skipped and deactivated connections
    """
    now = now or datetime.now(timezone.utc)
    window_seconds = service.settings.refresh_window_minutes * 60
    counts = {"refreshed": 0, "failed": 0, "skipped": 0, "deactivated": 0}

    for provider in service.registry.names:
        for organization_id, connection in service.connections.iter_connections(provider):
            if not connection.is_active or not connection.expires_within(window_seconds, now):
                counts["skipped"] += 1
                continue
            if not connection.refresh_token:
                logger.info(
                    "Skipping connection without refresh token",
                    provider=provider,
                    organization_id=organization_id,
                )
                counts["skipped"] += 1
                continue

            try:
                await service.refresh_connection(organization_id, provider)
                counts["refreshed"] += 1
            except OAuthServiceError as e:
                counts["failed"] += 1
                current = service.connections.get_connection(organization_id, provider)
                if current is not None and not current.is_active:
                    counts["deactivated"] += 1
                logger.warning(
                    "Scheduled refresh failed",
                    provider=provider,
                    organization_id=organization_id,
                    error=e.message,
                )
            except Exception:
                counts["failed"] += 1
                logger.exception(
                    "Unexpected error during scheduled refresh",
                    provider=provider,
                    organization_id=organization_id,
                )

    logger.info("Token refresh sweep complete", **counts)
    return counts


@celery_app.task(name="refresh_expiring_connections")
def refresh_expiring_connections():
    """Refresh connections expiring within the configured window."""
    service = build_oauth_service()
    return asyncio.run(run_refresh_sweep(service))
