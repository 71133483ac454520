"""device_registry_etl.store

Document store used for the Devices, Users, Interactions and run-snapshot
collections.

Backends:
    PostgresDocumentStore -- one ``document`` table (collection, doc_id,
                             jsonb body); see migrations/0001_documents.sql
    MemoryDocumentStore   -- dict-backed, same semantics; used by unit tests

Every PostgresDocumentStore call runs in its own ``conn.transaction()``
block on an autocommit connection, so there is no transaction spanning
several documents.  In dry-run mode open_postgres_store() wraps the whole
run in an outer force-rollback transaction and each call becomes a
savepoint: a failed call rolls back alone, everything is discarded at the
end.
"""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

import psycopg
from psycopg.types.json import Jsonb

from device_registry_etl.shared import (
    DocumentExistsError,
    DocumentNotFoundError,
    RunFatalError,
)

log = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Return the document or None."""
        ...

    def create(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        """Insert a new document; DocumentExistsError if the key is taken."""
        ...

    def set(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        """Insert or fully replace a document."""
        ...

    def update(self, collection: str, key: str, fields: dict[str, Any]) -> None:
        """Overwrite top-level fields; DocumentNotFoundError if missing."""
        ...

    def add(self, collection: str, doc: dict[str, Any]) -> str:
        """Insert under a generated key and return it."""
        ...

    def query(
        self, collection: str, equals: dict[str, Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        """(key, doc) pairs whose fields equal every value in ``equals``.

        A None value matches an explicit null only, not a missing field.
        """
        ...

    def top_by(self, collection: str, field_name: str) -> dict[str, Any] | None:
        """Document with the highest numeric ``field_name``, or None."""
        ...

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        """All documents ordered by key."""
        ...

    def count(self, collection: str) -> int:
        ...


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryDocumentStore:
    """Dict-backed DocumentStore.  Documents are deep-copied in and out."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _coll(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        doc = self._coll(collection).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def create(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        coll = self._coll(collection)
        if key in coll:
            raise DocumentExistsError(f"{collection}/{key} already exists")
        coll[key] = copy.deepcopy(doc)

    def set(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        self._coll(collection)[key] = copy.deepcopy(doc)

    def update(self, collection: str, key: str, fields: dict[str, Any]) -> None:
        coll = self._coll(collection)
        if key not in coll:
            raise DocumentNotFoundError(f"{collection}/{key} does not exist")
        coll[key].update(copy.deepcopy(fields))

    def add(self, collection: str, doc: dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        self.create(collection, key, doc)
        return key

    def query(
        self, collection: str, equals: dict[str, Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        return [
            (key, copy.deepcopy(doc))
            for key, doc in self._coll(collection).items()
            if all(f in doc and doc[f] == v for f, v in equals.items())
        ]

    def top_by(self, collection: str, field_name: str) -> dict[str, Any] | None:
        docs = [d for d in self._coll(collection).values() if _is_number(d.get(field_name))]
        if not docs:
            return None
        return copy.deepcopy(max(docs, key=lambda d: d[field_name]))

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        coll = self._coll(collection)
        return [copy.deepcopy(coll[k]) for k in sorted(coll)]

    def count(self, collection: str) -> int:
        return len(self._coll(collection))


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

class PostgresDocumentStore:
    """DocumentStore over a psycopg connection in autocommit mode."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        with self._conn.transaction():
            row = self._conn.execute(
                "SELECT body FROM document WHERE collection = %s AND doc_id = %s",
                (collection, key),
            ).fetchone()
        return row[0] if row else None

    def create(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        try:
            with self._conn.transaction():
                self._conn.execute(
                    """
                    INSERT INTO document (collection, doc_id, body)
                    VALUES (%s, %s, %s)
                    """,
                    (collection, key, Jsonb(doc)),
                )
        except psycopg.errors.UniqueViolation as exc:
            raise DocumentExistsError(f"{collection}/{key} already exists") from exc

    def set(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO document (collection, doc_id, body)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, doc_id) DO UPDATE SET
                  body = EXCLUDED.body,
                  updated_at = now()
                """,
                (collection, key, Jsonb(doc)),
            )

    def update(self, collection: str, key: str, fields: dict[str, Any]) -> None:
        with self._conn.transaction():
            row = self._conn.execute(
                """
                UPDATE document
                SET body = body || %s, updated_at = now()
                WHERE collection = %s AND doc_id = %s
                RETURNING doc_id
                """,
                (Jsonb(fields), collection, key),
            ).fetchone()
        if row is None:
            raise DocumentNotFoundError(f"{collection}/{key} does not exist")

    def add(self, collection: str, doc: dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        self.create(collection, key, doc)
        return key

    def query(
        self, collection: str, equals: dict[str, Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        # jsonb containment: {"f": null} only matches an explicit null.
        with self._conn.transaction():
            rows = self._conn.execute(
                """
                SELECT doc_id, body FROM document
                WHERE collection = %s AND body @> %s
                ORDER BY created_at ASC, doc_id ASC
                """,
                (collection, Jsonb(equals)),
            ).fetchall()
        return [(str(r[0]), r[1]) for r in rows]

    def top_by(self, collection: str, field_name: str) -> dict[str, Any] | None:
        with self._conn.transaction():
            row = self._conn.execute(
                """
                SELECT body FROM document
                WHERE collection = %s
                  AND jsonb_typeof(body -> %s::text) = 'number'
                ORDER BY (body ->> %s::text)::numeric DESC
                LIMIT 1
                """,
                (collection, field_name, field_name),
            ).fetchone()
        return row[0] if row else None

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        with self._conn.transaction():
            rows = self._conn.execute(
                "SELECT body FROM document WHERE collection = %s ORDER BY doc_id ASC",
                (collection,),
            ).fetchall()
        return [r[0] for r in rows]

    def count(self, collection: str) -> int:
        with self._conn.transaction():
            row = self._conn.execute(
                "SELECT count(*) FROM document WHERE collection = %s",
                (collection,),
            ).fetchone()
        return int(row[0])


@contextmanager
def open_postgres_store(dsn: str, *, dry_run: bool = False) -> Iterator[PostgresDocumentStore]:
    """Connect, yield a store, close.  Connection failure is a RunFatalError."""
    try:
        conn = psycopg.connect(dsn, autocommit=True)
    except psycopg.Error as exc:
        raise RunFatalError(f"cannot connect to document store: {exc}") from exc
    try:
        if dry_run:
            with conn.transaction(force_rollback=True):
                yield PostgresDocumentStore(conn)
            log.info("[dry-run] All changes rolled back.")
        else:
            yield PostgresDocumentStore(conn)
    finally:
        conn.close()
