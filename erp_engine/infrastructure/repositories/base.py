from __future__ import annotations

import abc
import contextlib
from typing import List, Optional

from erp_engine.domain.models import Document, DocumentKind
from erp_engine.errors import NotFound


class TenantScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without tenant/workspace scope."""


class UniqueConstraintViolation(Exception):
    """A document collided with an existing one on its unique key."""

    def __init__(self, kind: DocumentKind, unique_key: str | None) -> None:
        self.kind = DocumentKind(kind)
        self.unique_key = unique_key
        super().__init__(f"{self.kind.value} unique key already taken: {unique_key}")


class BaseRepository:
    def __init__(self, *, tenant_id: str | None = None, workspace_id: str | None = None) -> None:
        scope = str(tenant_id or workspace_id or "").strip()
        if not scope:
            raise TenantScopeRequiredError("tenant_id or workspace_id is required for repository access")
        self.tenant_id = scope
        self.workspace_id = str(workspace_id or tenant_id or "").strip() or scope


class UnitOfWork(abc.ABC):
    """Transactional view of the document store.

    Everything written through a unit of work becomes visible atomically when the
    surrounding ``DocumentRepository.unit_of_work()`` block exits cleanly, and is
    discarded when it raises.
    """

    @abc.abstractmethod
    def get(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        ...

    @abc.abstractmethod
    def add(self, document: Document) -> Document:
        """Insert a new document; raises UniqueConstraintViolation on a taken unique key."""

    @abc.abstractmethod
    def save(self, document: Document, expected_version: int) -> Document:
        """Replace a stored document; raises ConcurrencyConflict when the version moved."""

    @abc.abstractmethod
    def delete(self, document: Document, expected_version: int) -> None:
        ...

    @abc.abstractmethod
    def query(
        self,
        kind: DocumentKind,
        *,
        status: str | None = None,
        supplier_ref: str | None = None,
        parent_ref: str | None = None,
    ) -> List[Document]:
        ...

    @abc.abstractmethod
    def find_by_unique_key(self, kind: DocumentKind, unique_key: str) -> Optional[Document]:
        ...

    @abc.abstractmethod
    def next_number(self, kind: DocumentKind) -> int:
        ...

    def require(self, kind: DocumentKind, document_id: str) -> Document:
        document = self.get(kind, document_id)
        if document is None:
            raise NotFound(details=f"{DocumentKind(kind).value} {document_id} not found")
        return document


class DocumentRepository(BaseRepository, abc.ABC):
    """Persistence port for commercial documents, scoped to one tenant."""

    @abc.abstractmethod
    def unit_of_work(self) -> contextlib.AbstractContextManager[UnitOfWork]:
        ...

    def get(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        with self.unit_of_work() as uow:
            return uow.get(kind, document_id)

    def require(self, kind: DocumentKind, document_id: str) -> Document:
        with self.unit_of_work() as uow:
            return uow.require(kind, document_id)

    def query(
        self,
        kind: DocumentKind,
        *,
        status: str | None = None,
        supplier_ref: str | None = None,
        parent_ref: str | None = None,
    ) -> List[Document]:
        with self.unit_of_work() as uow:
            return uow.query(kind, status=status, supplier_ref=supplier_ref, parent_ref=parent_ref)

    def find_by_unique_key(self, kind: DocumentKind, unique_key: str) -> Optional[Document]:
        with self.unit_of_work() as uow:
            return uow.find_by_unique_key(kind, unique_key)

