"""Human confirmation of match candidates."""

from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.logger import get_logger
from src.models import (
    LINKED_STATUSES,
    AccountingDocument,
    BankTransaction,
    MatchCandidate,
    MatchPattern,
    TransactionStatus,
)
from src.services.parsing import fold_text
from src.utils.rut import normalize_rut

logger = get_logger(__name__)


class TransactionNotFoundError(LookupError):
    pass


class DocumentNotFoundError(LookupError):
    pass


class ConfirmationError(Exception):
    """Confirmation action conflicts with the transaction's current link."""


def set_status(
    txn: BankTransaction,
    status: TransactionStatus,
    documento_id: UUID | None = None,
) -> None:
    """Single writer for status and document link, keeping them consistent."""
    status = TransactionStatus(status)
    if status in LINKED_STATUSES:
        if documento_id is None:
            raise ValueError(f"Status {status.value} requires a document link")
    else:
        documento_id = None
    txn.status = status
    txn.documento_id = documento_id


def append_note(
    txn: BankTransaction,
    action: str,
    *,
    note: str | None = None,
    documento_id: UUID | None = None,
    **extra: Any,
) -> None:
    entry = {
        "at": datetime.now(UTC).isoformat(),
        "action": action,
        "note": note,
        "documento_id": str(documento_id) if documento_id else None,
        **extra,
    }
    # Reassign so the JSON column is flagged dirty
    txn.notas = [*(txn.notas or []), entry]


def pattern_keywords(description: str, limit: int = 3) -> str:
    words = [word for word in fold_text(description).split() if len(word) > 2]
    return " ".join(words[:limit])


async def get_transaction(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    client_id: UUID,
    for_update: bool = False,
) -> BankTransaction:
    stmt = (
        select(BankTransaction)
        .where(BankTransaction.id == transaction_id)
        .where(BankTransaction.client_id == client_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
    return txn


async def list_transactions(
    db: AsyncSession,
    *,
    client_id: UUID,
    year: int | None = None,
    month: int | None = None,
    status: TransactionStatus | None = None,
    categoria: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[BankTransaction], int]:
    conditions = [BankTransaction.client_id == client_id]
    if year is not None:
        start, end = period_bounds(year, month)
        conditions.extend([BankTransaction.fecha >= start, BankTransaction.fecha < end])
    if status is not None:
        conditions.append(BankTransaction.status == status)
    if categoria is not None:
        conditions.append(BankTransaction.categoria == categoria)

    total = await db.scalar(select(func.count(BankTransaction.id)).where(*conditions))
    result = await db.execute(
        select(BankTransaction)
        .where(*conditions)
        .order_by(BankTransaction.fecha.desc(), BankTransaction.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars()), total or 0


def period_bounds(year: int, month: int | None = None) -> tuple[date, date]:
    """Half-open [start, end) date range for a year or a single month."""
    if month is None:
        return date(year, 1, 1), date(year + 1, 1, 1)
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


async def get_candidates(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    client_id: UUID,
) -> list[MatchCandidate]:
    await get_transaction(db, transaction_id, client_id=client_id)
    result = await db.execute(
        select(MatchCandidate)
        .where(MatchCandidate.transaction_id == transaction_id)
        .order_by(MatchCandidate.rank)
    )
    return list(result.scalars())


async def learn_pattern(
    db: AsyncSession,
    txn: BankTransaction,
    document: AccountingDocument,
) -> MatchPattern | None:
    """Record or strengthen the description pattern confirmed for an issuer."""
    rut = normalize_rut(document.rut_emisor)
    keywords = pattern_keywords(txn.descripcion_normalizada or txn.descripcion)
    if rut is None or not keywords:
        return None

    result = await db.execute(
        select(MatchPattern)
        .where(MatchPattern.client_id == txn.client_id)
        .where(MatchPattern.rut_emisor == rut)
        .where(MatchPattern.keywords == keywords)
    )
    pattern = result.scalar_one_or_none()
    now = datetime.now(UTC)
    if pattern is None:
        pattern = MatchPattern(
            client_id=txn.client_id,
            rut_emisor=rut,
            keywords=keywords,
            times_confirmed=1,
            last_used_at=now,
        )
        db.add(pattern)
    else:
        pattern.times_confirmed += 1
        pattern.last_used_at = now
    return pattern


async def confirm_match(
    db: AsyncSession,
    transaction_id: UUID,
    documento_id: UUID,
    *,
    client_id: UUID,
    notes: str | None = None,
) -> BankTransaction:
    """Link a document to a transaction.

    The status becomes ``matched`` when the document was one of the offered
    candidates and ``manual`` otherwise.

    Raises:
        TransactionNotFoundError: Unknown transaction for this client
        DocumentNotFoundError: Unknown document for this client
        ConfirmationError: Transaction is already linked to another document,
            or the document is already linked to another transaction
    """
    txn = await get_transaction(db, transaction_id, client_id=client_id, for_update=True)
    if txn.documento_id is not None:
        if txn.documento_id == documento_id:
            return txn
        raise ConfirmationError(
            f"Transaction {transaction_id} is already linked to document {txn.documento_id}"
        )

    document = await db.scalar(
        select(AccountingDocument)
        .where(AccountingDocument.id == documento_id)
        .where(AccountingDocument.client_id == client_id)
    )
    if document is None:
        raise DocumentNotFoundError(f"Document {documento_id} not found")

    linked_elsewhere = await db.scalar(
        select(BankTransaction.id)
        .where(BankTransaction.client_id == client_id)
        .where(BankTransaction.documento_id == documento_id)
        .where(BankTransaction.id != txn.id)
        .limit(1)
    )
    if linked_elsewhere is not None:
        raise ConfirmationError(
            f"Document {documento_id} is already linked to transaction {linked_elsewhere}"
        )

    candidate = await db.scalar(
        select(MatchCandidate)
        .where(MatchCandidate.transaction_id == txn.id)
        .where(MatchCandidate.documento_id == documento_id)
    )
    status = TransactionStatus.MATCHED if candidate is not None else TransactionStatus.MANUAL
    set_status(txn, status, documento_id)
    txn.match_score = candidate.score if candidate is not None else None
    append_note(txn, "confirm", note=notes, documento_id=documento_id, status=status.value)
    await learn_pattern(db, txn, document)
    await db.flush()

    logger.info(
        "Match confirmed",
        transaction_id=str(txn.id),
        documento_id=str(documento_id),
        status=status.value,
    )
    return txn


async def reject_match(
    db: AsyncSession,
    transaction_id: UUID,
    documento_id: UUID,
    *,
    client_id: UUID,
    notes: str | None = None,
) -> BankTransaction:
    """Record a rejected candidate. Status and link are left untouched."""
    txn = await get_transaction(db, transaction_id, client_id=client_id, for_update=True)
    if txn.documento_id == documento_id:
        raise ConfirmationError("Document is the confirmed link; undo the match instead")
    append_note(txn, "reject", note=notes, documento_id=documento_id)
    await db.flush()
    logger.info("Candidate rejected", transaction_id=str(txn.id), documento_id=str(documento_id))
    return txn


async def undo_match(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    client_id: UUID,
    notes: str | None = None,
) -> BankTransaction:
    txn = await get_transaction(db, transaction_id, client_id=client_id, for_update=True)
    if txn.documento_id is None:
        raise ConfirmationError(f"Transaction {transaction_id} has no confirmed document")
    previous = txn.documento_id
    set_status(txn, TransactionStatus.PENDING)
    append_note(txn, "undo", note=notes, documento_id=previous)
    await db.flush()
    logger.info("Match undone", transaction_id=str(txn.id), documento_id=str(previous))
    return txn
