from __future__ import annotations

import logging
from typing import Any, Dict, Iterable

from erp_engine.core import DomainEvent, EventBus, get_event_bus
from erp_engine.domain.contracts import ActorContext
from erp_engine.domain.models import ActorClass, Document, DocumentKind
from erp_engine.errors import Forbidden
from erp_engine.infrastructure.repositories.base import DocumentRepository, UnitOfWork


NUMBER_FORMATS: Dict[DocumentKind, str] = {
    DocumentKind.RFQ: "RFQ-{:06d}",
    DocumentKind.QUOTATION: "SQ-{:06d}",
    DocumentKind.PURCHASE_ORDER: "PO{:06d}",
    DocumentKind.INVOICE: "INV-{:06d}",
    DocumentKind.RECEIPT: "REC-{:06d}",
}


def format_document_number(kind: DocumentKind, value: int) -> str:
    return NUMBER_FORMATS[DocumentKind(kind)].format(int(value))


class Workflow:
    """Shared plumbing for the document workflows.

    A workflow method opens one unit of work, mutates documents through it and
    returns. Events collected during the call are published only after the unit of
    work committed.
    """

    def __init__(
        self,
        repository: DocumentRepository,
        *,
        event_bus: EventBus | None = None,
        currency: str = "INR",
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus or get_event_bus()
        self.currency = currency
        self._logger = logging.getLogger("erp_engine")

    @property
    def tenant_id(self) -> str:
        return self.repository.tenant_id

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.event_bus.publish(event)

    def _log(self, message: str, **extra: Any) -> None:
        extra.setdefault("tenant_id", self.tenant_id)
        self._logger.info(message, extra=extra)

    @staticmethod
    def _next_number(uow: UnitOfWork, kind: DocumentKind) -> str:
        return format_document_number(kind, uow.next_number(kind))

    @staticmethod
    def _require_actor(actor: ActorContext, actor_class: ActorClass) -> None:
        if actor is None or actor.actor_class != actor_class:
            raise Forbidden(
                details=f"operation requires {actor_class.value}",
                payload={"required_actor": actor_class.value},
            )

    @staticmethod
    def _require_owner(actor: ActorContext, document: Document) -> None:
        """Suppliers only touch documents addressed to them."""
        if actor.is_supplier and document.owner_ref != actor.org_or_supplier_id:
            raise Forbidden(
                message_key="not_document_owner",
                details=f"{document.kind.value} {document.id} belongs to another supplier",
            )
