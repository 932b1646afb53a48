"""Database and document models."""

from apps.api.models.document import Document
from apps.api.models.oauth import (
    Connection,
    ConnectionSummary,
    OAuthState,
)

__all__ = [
    "Connection",
    "ConnectionSummary",
    "Document",
    "OAuthState",
]
