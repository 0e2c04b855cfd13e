"""Reconciliation summary for a client and period."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models import BankTransaction, TransactionStatus
from src.services.review import period_bounds


def conciliation_rate(conciliados: int, total: int) -> float:
    """Percentage of reconciled items, two decimals; 0 for an empty set."""
    if total == 0:
        return 0.0
    rate = (Decimal(conciliados) * 100 / Decimal(total)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    return float(rate)


async def get_reconciliation_summary(
    db: AsyncSession,
    client_id: UUID,
    year: int | None = None,
    month: int | None = None,
) -> dict[str, Any]:
    conditions = [BankTransaction.client_id == client_id]
    if year is not None:
        start, end = period_bounds(year, month)
        conditions.extend([BankTransaction.fecha >= start, BankTransaction.fecha < end])

    rows = await db.execute(
        select(BankTransaction.status, func.count(BankTransaction.id), func.sum(func.abs(BankTransaction.monto)))
        .where(*conditions)
        .group_by(BankTransaction.status)
    )
    counts = {status.value: 0 for status in TransactionStatus}
    amounts = {status.value: 0 for status in TransactionStatus}
    for status, count, amount in rows.all():
        key = TransactionStatus(status).value
        counts[key] = count
        amounts[key] = int(amount or 0)

    total = sum(counts.values())
    monto_total = sum(amounts.values())
    conciliados = counts["matched"] + counts["manual"]
    monto_conciliado = amounts["matched"] + amounts["manual"]

    return {
        "client_id": client_id,
        "year": year,
        "month": month,
        "total": total,
        "matched": conciliados,
        "partial": counts["partial"],
        "unmatched": counts["unmatched"],
        "pending": counts["pending"],
        "monto_total": monto_total,
        "monto_conciliado": monto_conciliado,
        "monto_pendiente": monto_total - monto_conciliado,
        "tasa_conciliacion": conciliation_rate(conciliados, total),
    }
