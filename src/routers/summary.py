"""Reconciliation summary API router."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query

from src.deps import DbSession
from src.schemas import ReconciliationSummaryResponse
from src.services.summary import get_reconciliation_summary
from src.utils.exceptions import raise_bad_request

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/summary", response_model=ReconciliationSummaryResponse)
async def reconciliation_summary(
    db: DbSession,
    client_id: Annotated[UUID, Query()],
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
) -> ReconciliationSummaryResponse:
    if month is not None and year is None:
        raise_bad_request("month requires year")
    summary = await get_reconciliation_summary(db, client_id, year, month)
    return ReconciliationSummaryResponse(**summary)
