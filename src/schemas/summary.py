"""Pydantic schemas for the reconciliation summary."""

from uuid import UUID

from pydantic import BaseModel


class ReconciliationSummaryResponse(BaseModel):
    client_id: UUID
    year: int | None
    month: int | None
    total: int
    matched: int
    partial: int
    unmatched: int
    pending: int
    monto_total: int
    monto_conciliado: int
    monto_pendiente: int
    tasa_conciliacion: float
