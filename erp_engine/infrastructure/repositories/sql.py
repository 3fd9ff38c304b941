from __future__ import annotations

import contextlib
import json
from typing import Any, Iterator, List, Optional

from erp_engine.domain.models import Document, DocumentKind, document_from_dict
from erp_engine.errors import ConcurrencyConflict
from erp_engine.infrastructure.repositories.base import DocumentRepository, UniqueConstraintViolation, UnitOfWork


def _is_unique_violation(exc: Exception) -> bool:
    pg_code = str(getattr(exc, "pgcode", "") or "").strip()
    if pg_code == "23505":
        return True
    message = str(exc or "").lower()
    if "unique constraint failed" in message:
        return True
    if "duplicate key value violates unique constraint" in message:
        return True
    return False


def _row_value(row: Any, key: str) -> Any:
    if isinstance(row, dict):
        return row.get(key)
    return row[key]


def _payload_json(document: Document) -> str:
    return json.dumps(document.to_dict(), ensure_ascii=True, separators=(",", ":"), sort_keys=True)


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, repository: "SqlDocumentRepository") -> None:
        self._db = repository.db
        self._tenant_id = repository.tenant_id

    def _to_entity(self, kind: DocumentKind, row: Any) -> Document:
        payload = _row_value(row, "payload")
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        data = json.loads(payload) if isinstance(payload, str) else dict(payload or {})
        return document_from_dict(kind, data, version=int(_row_value(row, "version")))

    def get(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        kind = DocumentKind(kind)
        row = self._db.execute(
            """
            SELECT version, payload
            FROM documents
            WHERE tenant_id = ? AND kind = ? AND id = ?
            LIMIT 1
            """,
            (self._tenant_id, kind.value, str(document_id)),
        ).fetchone()
        return self._to_entity(kind, row) if row else None

    def add(self, document: Document) -> Document:
        try:
            self._db.execute(
                """
                INSERT INTO documents (
                    id, tenant_id, kind, number, status, supplier_ref, parent_ref, unique_key, version, payload
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    self._tenant_id,
                    document.kind.value,
                    document.number,
                    document.status_value,
                    document.owner_ref,
                    document.parent_ref,
                    document.unique_key,
                    1,
                    _payload_json(document),
                ),
            )
        except Exception as exc:  # noqa: BLE001
            if _is_unique_violation(exc):
                raise UniqueConstraintViolation(document.kind, document.unique_key or document.id) from exc
            raise
        document.version = 1
        return document

    def save(self, document: Document, expected_version: int) -> Document:
        new_version = int(expected_version) + 1
        previous_version = document.version
        document.version = new_version
        cursor = self._db.execute(
            """
            UPDATE documents
            SET number = ?,
                status = ?,
                supplier_ref = ?,
                parent_ref = ?,
                unique_key = ?,
                version = ?,
                payload = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE tenant_id = ? AND kind = ? AND id = ? AND version = ?
            """,
            (
                document.number,
                document.status_value,
                document.owner_ref,
                document.parent_ref,
                document.unique_key,
                new_version,
                _payload_json(document),
                self._tenant_id,
                document.kind.value,
                document.id,
                int(expected_version),
            ),
        )
        if int(getattr(cursor, "rowcount", 0) or 0) == 0:
            document.version = previous_version
            raise ConcurrencyConflict(details=f"{document.kind.value} {document.id} changed (expected v{expected_version})")
        return document

    def delete(self, document: Document, expected_version: int) -> None:
        cursor = self._db.execute(
            """
            DELETE FROM documents
            WHERE tenant_id = ? AND kind = ? AND id = ? AND version = ?
            """,
            (self._tenant_id, document.kind.value, document.id, int(expected_version)),
        )
        if int(getattr(cursor, "rowcount", 0) or 0) == 0:
            raise ConcurrencyConflict(details=f"{document.kind.value} {document.id} changed (expected v{expected_version})")

    def query(
        self,
        kind: DocumentKind,
        *,
        status: str | None = None,
        supplier_ref: str | None = None,
        parent_ref: str | None = None,
    ) -> List[Document]:
        kind = DocumentKind(kind)
        clauses = ["tenant_id = ?", "kind = ?"]
        params: list[Any] = [self._tenant_id, kind.value]
        if status is not None:
            clauses.append("status = ?")
            params.append(str(getattr(status, "value", status)))
        if supplier_ref is not None:
            clauses.append("supplier_ref = ?")
            params.append(supplier_ref)
        if parent_ref is not None:
            clauses.append("parent_ref = ?")
            params.append(parent_ref)
        rows = self._db.execute(
            f"""
            SELECT version, payload
            FROM documents
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at, number, id
            """,
            tuple(params),
        ).fetchall()
        return [self._to_entity(kind, row) for row in rows]

    def find_by_unique_key(self, kind: DocumentKind, unique_key: str) -> Optional[Document]:
        kind = DocumentKind(kind)
        row = self._db.execute(
            """
            SELECT version, payload
            FROM documents
            WHERE tenant_id = ? AND kind = ? AND unique_key = ?
            LIMIT 1
            """,
            (self._tenant_id, kind.value, unique_key),
        ).fetchone()
        return self._to_entity(kind, row) if row else None

    def next_number(self, kind: DocumentKind) -> int:
        row = self._db.execute(
            """
            INSERT INTO document_sequences (tenant_id, kind, last_value)
            VALUES (?, ?, 1)
            ON CONFLICT (tenant_id, kind) DO UPDATE SET last_value = document_sequences.last_value + 1
            RETURNING last_value
            """,
            (self._tenant_id, DocumentKind(kind).value),
        ).fetchone()
        return int(_row_value(row, "last_value"))


class SqlDocumentRepository(DocumentRepository):
    """Document store over the sqlite / PostgreSQL ``Database`` wrapper.

    Each unit of work is one database transaction. Optimistic concurrency relies on
    ``UPDATE ... WHERE version = ?`` and idempotency on the unique index over
    ``(tenant_id, kind, unique_key)``.
    """

    def __init__(self, *, tenant_id: str | None = None, db) -> None:
        super().__init__(tenant_id=tenant_id)
        self.db = db

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator[SqlUnitOfWork]:
        with self.db.transaction():
            yield SqlUnitOfWork(self)
