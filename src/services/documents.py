"""Read access to accounting documents owned by the document subsystem."""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models import AccountingDocument, DocumentType
from src.services.matching import MatchableTransaction, MatcherConfig
from src.utils.rut import extract_rut, normalize_rut


@dataclass(frozen=True)
class DocumentRecord:
    id: UUID
    document_type: DocumentType
    folio: int
    fecha_emision: date
    rut_emisor: str
    razon_social: str | None
    monto_total: int
    currency: str = "CLP"

    @classmethod
    def from_model(cls, model: AccountingDocument) -> "DocumentRecord":
        return cls(
            id=model.id,
            document_type=model.document_type,
            folio=model.folio,
            fecha_emision=model.fecha_emision,
            rut_emisor=model.rut_emisor,
            razon_social=model.razon_social,
            monto_total=model.monto_total,
            currency=model.currency,
        )


class DocumentStore(Protocol):
    async def find_documents(
        self,
        client_id: UUID,
        *,
        rut: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: int | None = None,
        amount_max: int | None = None,
    ) -> list[DocumentRecord]: ...


class SqlDocumentStore:
    """DocumentStore over the ``accounting_documents`` table."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_documents(
        self,
        client_id: UUID,
        *,
        rut: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: int | None = None,
        amount_max: int | None = None,
    ) -> list[DocumentRecord]:
        stmt = select(AccountingDocument).where(AccountingDocument.client_id == client_id)
        if date_from is not None:
            stmt = stmt.where(AccountingDocument.fecha_emision >= date_from)
        if date_to is not None:
            stmt = stmt.where(AccountingDocument.fecha_emision <= date_to)
        if amount_min is not None:
            stmt = stmt.where(AccountingDocument.monto_total >= amount_min)
        if amount_max is not None:
            stmt = stmt.where(AccountingDocument.monto_total <= amount_max)
        stmt = stmt.order_by(AccountingDocument.fecha_emision, AccountingDocument.folio)

        result = await self.db.execute(stmt)
        documents = [DocumentRecord.from_model(doc) for doc in result.scalars()]
        if rut is not None:
            # Stored RUTs may carry dots, so compare normalized values
            target = normalize_rut(rut)
            documents = [doc for doc in documents if normalize_rut(doc.rut_emisor) == target]
        return documents


async def candidate_pool(
    store: DocumentStore,
    client_id: UUID,
    txn: MatchableTransaction,
    config: MatcherConfig,
) -> list[DocumentRecord]:
    """Documents worth scoring for one transaction.

    The date window around the transaction, plus documents of the counterpart
    RUT whose amount is within the close tolerance regardless of date.
    """
    window = timedelta(days=config.date_window_days)
    pool = await store.find_documents(
        client_id,
        date_from=txn.fecha - window,
        date_to=txn.fecha + window,
    )

    rut = normalize_rut(txn.rut_contraparte) or extract_rut(txn.descripcion or "")
    if rut:
        amount = abs(txn.monto)
        slack = int(amount * config.amount_close_percent)
        same_issuer = await store.find_documents(
            client_id,
            rut=rut,
            amount_min=amount - slack,
            amount_max=amount + slack,
        )
        known = {doc.id for doc in pool}
        pool.extend(doc for doc in same_issuer if doc.id not in known)
    return pool
