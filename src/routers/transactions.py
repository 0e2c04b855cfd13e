"""Bank transactions and match review API router."""

from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, Query

from src.deps import DbSession
from src.models import TransactionStatus
from src.schemas import (
    BankTransactionListResponse,
    BankTransactionResponse,
    CandidateListResponse,
    ConfirmMatchRequest,
    MatchCandidateResponse,
    RejectMatchRequest,
    UndoMatchRequest,
)
from src.services.review import (
    ConfirmationError,
    DocumentNotFoundError,
    TransactionNotFoundError,
    confirm_match,
    get_candidates,
    list_transactions,
    reject_match,
    undo_match,
)
from src.utils.exceptions import raise_bad_request, raise_conflict, raise_not_found

router = APIRouter(prefix="/transactions", tags=["transactions"])

ClientId = Annotated[UUID, Query(description="Owning client (tenant) id")]


def _raise_review_error(exc: Exception) -> NoReturn:
    if isinstance(exc, TransactionNotFoundError):
        raise_not_found("Transaction", cause=exc)
    if isinstance(exc, DocumentNotFoundError):
        raise_not_found("Document", cause=exc)
    if isinstance(exc, ConfirmationError):
        raise_conflict(str(exc), cause=exc)
    raise_bad_request(str(exc), cause=exc)


@router.get("", response_model=BankTransactionListResponse)
async def list_bank_transactions(
    db: DbSession,
    client_id: ClientId,
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    status: TransactionStatus | None = None,
    categoria: str | None = Query(default=None, max_length=32),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> BankTransactionListResponse:
    if month is not None and year is None:
        raise_bad_request("month requires year")
    items, total = await list_transactions(
        db,
        client_id=client_id,
        year=year,
        month=month,
        status=status,
        categoria=categoria,
        limit=limit,
        offset=offset,
    )
    return BankTransactionListResponse(
        items=[BankTransactionResponse.model_validate(txn) for txn in items],
        total=total,
    )


@router.get("/{transaction_id}/candidates", response_model=CandidateListResponse)
async def list_match_candidates(
    transaction_id: UUID,
    db: DbSession,
    client_id: ClientId,
) -> CandidateListResponse:
    """Candidates from the last match step, best first."""
    try:
        candidates = await get_candidates(db, transaction_id, client_id=client_id)
    except LookupError as exc:
        _raise_review_error(exc)
    return CandidateListResponse(
        transaction_id=transaction_id,
        items=[MatchCandidateResponse.model_validate(c) for c in candidates],
    )


@router.post("/{transaction_id}/confirm", response_model=BankTransactionResponse)
async def confirm_transaction_match(
    transaction_id: UUID,
    payload: ConfirmMatchRequest,
    db: DbSession,
    client_id: ClientId,
) -> BankTransactionResponse:
    try:
        txn = await confirm_match(
            db, transaction_id, payload.documento_id, client_id=client_id, notes=payload.notes
        )
    except (LookupError, ConfirmationError) as exc:
        _raise_review_error(exc)
    await db.commit()
    await db.refresh(txn)
    return BankTransactionResponse.model_validate(txn)


@router.post("/{transaction_id}/reject", response_model=BankTransactionResponse)
async def reject_transaction_match(
    transaction_id: UUID,
    payload: RejectMatchRequest,
    db: DbSession,
    client_id: ClientId,
) -> BankTransactionResponse:
    try:
        txn = await reject_match(
            db, transaction_id, payload.documento_id, client_id=client_id, notes=payload.notes
        )
    except (LookupError, ConfirmationError) as exc:
        _raise_review_error(exc)
    await db.commit()
    await db.refresh(txn)
    return BankTransactionResponse.model_validate(txn)


@router.post("/{transaction_id}/undo", response_model=BankTransactionResponse)
async def undo_transaction_match(
    transaction_id: UUID,
    db: DbSession,
    client_id: ClientId,
    payload: UndoMatchRequest | None = None,
) -> BankTransactionResponse:
    try:
        txn = await undo_match(
            db, transaction_id, client_id=client_id, notes=payload.notes if payload else None
        )
    except (LookupError, ConfirmationError) as exc:
        _raise_review_error(exc)
    await db.commit()
    await db.refresh(txn)
    return BankTransactionResponse.model_validate(txn)
