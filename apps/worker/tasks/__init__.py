"""Worker tasks package."""

from apps.worker.tasks.token_refresh import refresh_expiring_connections, run_refresh_sweep

__all__ = [
    "refresh_expiring_connections",
    "run_refresh_sweep",
]
