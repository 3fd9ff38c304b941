from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from erp_engine.domain.models import Document, DocumentKind, document_from_dict
from erp_engine.errors import ConcurrencyConflict
from erp_engine.infrastructure.repositories.base import DocumentRepository, UniqueConstraintViolation, UnitOfWork


_RowKey = Tuple[str, DocumentKind, str]


@dataclass
class _Row:
    version: int
    payload: Dict[str, Any]
    status: Optional[str]
    supplier_ref: Optional[str]
    parent_ref: Optional[str]
    unique_key: Optional[str]


@dataclass
class _Staged:
    op: str
    base_version: Optional[int]
    row: Optional[_Row]


def _row_for(document: Document) -> _Row:
    return _Row(
        version=document.version,
        payload=document.to_dict(),
        status=document.status_value,
        supplier_ref=document.owner_ref,
        parent_ref=document.parent_ref,
        unique_key=document.unique_key,
    )


class InMemoryDocumentStore:
    """Process-local backing store shared by the repositories of every tenant."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.rows: Dict[_RowKey, _Row] = {}
        self.sequences: Dict[Tuple[str, DocumentKind], int] = {}


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, repository: "InMemoryDocumentRepository") -> None:
        self._tenant_id = repository.tenant_id
        self._store = repository.store
        self._staged: Dict[_RowKey, _Staged] = {}

    def _key(self, kind: DocumentKind, document_id: str) -> _RowKey:
        return (self._tenant_id, DocumentKind(kind), str(document_id))

    def _visible(self, key: _RowKey) -> Optional[_Row]:
        staged = self._staged.get(key)
        if staged is not None:
            return staged.row
        with self._store.lock:
            return self._store.rows.get(key)

    def _visible_rows(self, kind: DocumentKind) -> Iterator[Tuple[_RowKey, _Row]]:
        kind = DocumentKind(kind)
        with self._store.lock:
            stored = [(key, row) for key, row in self._store.rows.items() if key[0] == self._tenant_id and key[1] == kind]
        seen = set()
        for key, row in stored:
            seen.add(key)
            staged = self._staged.get(key)
            if staged is None:
                yield key, row
            elif staged.row is not None:
                yield key, staged.row
        for key, staged in self._staged.items():
            if key in seen or key[1] != kind or staged.row is None:
                continue
            yield key, staged.row

    @staticmethod
    def _materialize(kind: DocumentKind, row: _Row) -> Document:
        return document_from_dict(kind, row.payload, version=row.version)

    def get(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        row = self._visible(self._key(kind, document_id))
        return self._materialize(kind, row) if row is not None else None

    def add(self, document: Document) -> Document:
        key = self._key(document.kind, document.id)
        if self._visible(key) is not None:
            raise UniqueConstraintViolation(document.kind, document.id)
        unique_key = document.unique_key
        if unique_key is not None and self.find_by_unique_key(document.kind, unique_key) is not None:
            raise UniqueConstraintViolation(document.kind, unique_key)
        document.version = 1
        self._staged[key] = _Staged(op="add", base_version=None, row=_row_for(document))
        return document

    def save(self, document: Document, expected_version: int) -> Document:
        key = self._key(document.kind, document.id)
        current = self._visible(key)
        if current is None or current.version != int(expected_version):
            raise ConcurrencyConflict(details=f"{document.kind.value} {document.id} changed (expected v{expected_version})")
        staged = self._staged.get(key)
        op = staged.op if staged is not None else "save"
        base_version = staged.base_version if staged is not None else current.version
        document.version = int(expected_version) + 1
        self._staged[key] = _Staged(op=op, base_version=base_version, row=_row_for(document))
        return document

    def delete(self, document: Document, expected_version: int) -> None:
        key = self._key(document.kind, document.id)
        current = self._visible(key)
        if current is None or current.version != int(expected_version):
            raise ConcurrencyConflict(details=f"{document.kind.value} {document.id} changed (expected v{expected_version})")
        staged = self._staged.get(key)
        if staged is not None and staged.op == "add":
            del self._staged[key]
            return
        base_version = staged.base_version if staged is not None else current.version
        self._staged[key] = _Staged(op="delete", base_version=base_version, row=None)

    def query(
        self,
        kind: DocumentKind,
        *,
        status: str | None = None,
        supplier_ref: str | None = None,
        parent_ref: str | None = None,
    ) -> List[Document]:
        results = []
        for _key, row in self._visible_rows(kind):
            if status is not None and row.status != str(getattr(status, "value", status)):
                continue
            if supplier_ref is not None and row.supplier_ref != supplier_ref:
                continue
            if parent_ref is not None and row.parent_ref != parent_ref:
                continue
            results.append(self._materialize(kind, row))
        return results

    def find_by_unique_key(self, kind: DocumentKind, unique_key: str) -> Optional[Document]:
        for _key, row in self._visible_rows(kind):
            if row.unique_key == unique_key:
                return self._materialize(kind, row)
        return None

    def next_number(self, kind: DocumentKind) -> int:
        sequence_key = (self._tenant_id, DocumentKind(kind))
        with self._store.lock:
            value = self._store.sequences.get(sequence_key, 0) + 1
            self._store.sequences[sequence_key] = value
        return value

    def commit(self) -> None:
        with self._store.lock:
            rows = self._store.rows
            for key, staged in self._staged.items():
                current = rows.get(key)
                if staged.op == "add":
                    if current is not None:
                        raise UniqueConstraintViolation(key[1], key[2])
                    unique_key = staged.row.unique_key
                    if unique_key is not None and any(
                        other_key[0] == key[0] and other_key[1] == key[1] and other.unique_key == unique_key
                        for other_key, other in rows.items()
                    ):
                        raise UniqueConstraintViolation(key[1], unique_key)
                elif current is None or current.version != staged.base_version:
                    raise ConcurrencyConflict(details=f"{key[1].value} {key[2]} changed concurrently")
            for key, staged in self._staged.items():
                if staged.row is None:
                    rows.pop(key, None)
                else:
                    rows[key] = staged.row
        self._staged.clear()


class InMemoryDocumentRepository(DocumentRepository):
    def __init__(self, *, tenant_id: str | None = None, store: InMemoryDocumentStore | None = None) -> None:
        super().__init__(tenant_id=tenant_id)
        self.store = store or InMemoryDocumentStore()

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator[InMemoryUnitOfWork]:
        uow = InMemoryUnitOfWork(self)
        yield uow
        uow.commit()
