"""Hierarchical document store on top of SQLAlchemy.

Documents are addressed by slash-separated paths with alternating collection
and document segments (``organizations/{org}/cloudIntegrations/{provider}``).
Each call runs in its own transaction, so single-document reads and writes are
atomic. Multi-document writes go through :class:`WriteBatch`, which commits at
most ``batch_write_limit`` operations at once.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Generator, Iterator, Optional
from uuid import uuid4

import structlog
from sqlalchemy.orm import Session

from apps.api.core.errors import InvalidArgumentError, NotFoundError
from apps.api.models.document import Document

logger = structlog.get_logger()

TIMESTAMP_TAG = "$timestamp"


def encode_value(value: Any) -> Any:
    """Make a document value JSON-safe, tagging datetimes so they survive a round trip."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {TIMESTAMP_TAG: value.isoformat()}
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_value(item) for item in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {TIMESTAMP_TAG}:
            return datetime.fromisoformat(value[TIMESTAMP_TAG])
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def split_document_path(path: str) -> tuple[str, str, str]:
    """Split a document path into (parent collection path, collection name, doc id)."""
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments or len(segments) % 2:
        raise InvalidArgumentError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-2], segments[-1]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class StoredDocument:
    """A document read from the store."""

    path: str
    data: dict
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def parent(self) -> str:
        return self.path.rsplit("/", 1)[0]

    @classmethod
    def from_row(cls, row: Document) -> "StoredDocument":
        return cls(
            path=row.path,
            data=decode_value(row.data or {}),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )


class DocumentStore:
    """Firestore-style document access backed by the ``documents`` table."""

    def __init__(self, session_factory: Callable[[], Session], batch_write_limit: int = 500):
        self._session_factory = session_factory
        self.batch_write_limit = batch_write_limit

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Reads

    def get(self, path: str) -> Optional[dict]:
        """Return a document's data, or None if it does not exist."""
        document = self.get_document(path)
        return document.data if document else None

    def get_document(self, path: str) -> Optional[StoredDocument]:
        split_document_path(path)
        with self._session() as db:
            row = db.get(Document, path.strip("/"))
            return StoredDocument.from_row(row) if row else None

    def exists(self, path: str) -> bool:
        return self.get_document(path) is not None

    def list_collection(
        self, collection_path: str, id_prefix: Optional[str] = None
    ) -> list[StoredDocument]:
        """List the documents directly inside a collection, ordered by id."""
        with self._session() as db:
            query = db.query(Document).filter(Document.parent_path == collection_path.strip("/"))
            if id_prefix:
                query = query.filter(Document.doc_id.startswith(id_prefix, autoescape=True))
            return [StoredDocument.from_row(row) for row in query.order_by(Document.doc_id)]

    def collection_group(self, collection: str) -> Iterator[StoredDocument]:
        """Iterate every document in every collection with the given name."""
        with self._session() as db:
            rows = db.query(Document).filter(Document.collection == collection).order_by(Document.path).all()
            documents = [StoredDocument.from_row(row) for row in rows]
        yield from documents

    # Writes

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        """Create or replace a document; with ``merge`` only the given fields change."""
        with self._session() as db:
            self._apply_set(db, path, data, merge)

    def update(self, path: str, fields: dict) -> None:
        """Update fields of an existing document.

        Raises:
            NotFoundError: If the document does not exist
        """
        with self._session() as db:
            self._apply_update(db, path, fields)

    def delete(self, path: str) -> bool:
        """Delete a document. Returns False if there was nothing to delete."""
        with self._session() as db:
            return self._apply_delete(db, path)

    def add(self, collection_path: str, data: dict) -> str:
        """Create a document with a generated id inside a collection and return the id."""
        doc_id = uuid4().hex[:20]
        self.set(f"{collection_path.strip('/')}/{doc_id}", data)
        return doc_id

    def batch(self) -> "WriteBatch":
        return WriteBatch(self)

    def _apply_set(self, db: Session, path: str, data: dict, merge: bool) -> None:
        parent, collection, doc_id = split_document_path(path)
        path = path.strip("/")
        row = db.get(Document, path)
        if row is None:
            db.add(
                Document(
                    path=path,
                    parent_path=parent,
                    collection=collection,
                    doc_id=doc_id,
                    data=encode_value(data),
                )
            )
            return
        if merge:
            merged = dict(row.data or {})
            merged.update(encode_value(data))
            row.data = merged
        else:
            row.data = encode_value(data)

    def _apply_update(self, db: Session, path: str, fields: dict) -> None:
        split_document_path(path)
        row = db.get(Document, path.strip("/"))
        if row is None:
            raise NotFoundError(f"Document not found: {path}")
        merged = dict(row.data or {})
        merged.update(encode_value(fields))
        row.data = merged

    def _apply_delete(self, db: Session, path: str) -> bool:
        split_document_path(path)
        row = db.get(Document, path.strip("/"))
        if row is None:
            return False
        db.delete(row)
        return True


class WriteBatch:
    """Writes committed together in one transaction.

    Commits larger than the store's batch limit are rejected; callers chunk
    their work and commit once per chunk.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._operations: list[tuple[str, str, Optional[dict], bool]] = []

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def is_full(self) -> bool:
        return len(self._operations) >= self._store.batch_write_limit

    def set(self, path: str, data: dict, merge: bool = False) -> "WriteBatch":
        self._operations.append(("set", path, data, merge))
        return self

    def update(self, path: str, fields: dict) -> "WriteBatch":
        self._operations.append(("update", path, fields, False))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self._operations.append(("delete", path, None, False))
        return self

    def commit(self) -> int:
        """Apply every queued write atomically and return how many were applied."""
        count = len(self._operations)
        if count > self._store.batch_write_limit:
            raise InvalidArgumentError(
                f"Batch of {count} writes exceeds the limit of {self._store.batch_write_limit}"
            )
        if not count:
            return 0

        with self._store._session() as db:
            for kind, path, data, merge in self._operations:
                if kind == "set":
                    self._store._apply_set(db, path, data, merge)
                elif kind == "update":
                    self._store._apply_update(db, path, data)
                else:
                    self._store._apply_delete(db, path)
                # Later operations in the same batch may touch the same path
                db.flush()

        logger.debug("Committed write batch", writes=count)
        self._operations = []
        return count
