"""Document storage model backing the hierarchical document store."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from apps.api.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(Base):
    """One document addressed by a slash-separated path.

    ``organizations/org1/cloudIntegrations/google`` lives in the collection
    ``organizations/org1/cloudIntegrations`` under the id ``google``.
    """

    __tablename__ = "documents"

    path = Column(String(1024), primary_key=True)
    parent_path = Column(String(1024), nullable=False, index=True)
    collection = Column(String(255), nullable=False, index=True)
    doc_id = Column(String(255), nullable=False)
    data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Document(path={self.path})>"
