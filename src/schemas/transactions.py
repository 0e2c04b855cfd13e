"""Pydantic schemas for bank transactions and match review."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from src.models import BankCode, Direction, TransactionStatus
from src.schemas.base import BaseResponse, ListResponse


class BankTransactionResponse(BaseResponse):
    id: UUID
    client_id: UUID
    account_id: str
    bank: BankCode
    fecha: date
    fecha_valor: date | None
    descripcion: str
    descripcion_normalizada: str
    monto: int
    tipo: Direction
    saldo: int | None
    currency: str
    referencia: str | None
    rut_contraparte: str | None
    numero_documento: str | None
    categoria: str | None
    categoria_confianza: float | None
    status: TransactionStatus
    documento_id: UUID | None
    match_score: float | None
    notas: list[dict[str, Any]]
    created_at: datetime


BankTransactionListResponse = ListResponse[BankTransactionResponse]


class MatchCandidateResponse(BaseResponse):
    documento_id: UUID
    rank: int
    score: float
    reasons: list[str]
    amount_diff: int
    day_diff: int


class CandidateListResponse(BaseModel):
    transaction_id: UUID
    items: list[MatchCandidateResponse]


class ConfirmMatchRequest(BaseModel):
    documento_id: UUID
    notes: str | None = Field(default=None, max_length=2000)


class RejectMatchRequest(BaseModel):
    documento_id: UUID
    notes: str | None = Field(default=None, max_length=2000)


class UndoMatchRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)
