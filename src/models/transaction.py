"""Bank transaction (movement) models."""

from datetime import date
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database import Base
from src.models.base import ClientOwnedMixin, TimestampMixin, UUIDMixin, value_enum
from src.models.statement import BankCode

if TYPE_CHECKING:
    from src.models.matching import MatchCandidate


class Direction(str, Enum):
    """Movement direction: cargo is money out (debit), abono money in (credit)."""

    CARGO = "cargo"
    ABONO = "abono"


class TransactionStatus(str, Enum):
    """Reconciliation status of a bank movement."""

    PENDING = "pending"
    MATCHED = "matched"
    PARTIAL = "partial"
    UNMATCHED = "unmatched"
    MANUAL = "manual"


LINKED_STATUSES = frozenset({TransactionStatus.MATCHED, TransactionStatus.MANUAL})
OPEN_STATUSES = frozenset(
    {TransactionStatus.PENDING, TransactionStatus.PARTIAL, TransactionStatus.UNMATCHED}
)

UNCATEGORIZED = "SIN_CATEGORIA"


class BankTransaction(UUIDMixin, ClientOwnedMixin, TimestampMixin, Base):
    """Normalized bank movement."""

    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint("client_id", "dedup_hash", name="uq_bank_transactions_client_dedup"),
        CheckConstraint(
            "(status IN ('matched', 'manual')) = (documento_id IS NOT NULL)",
            name="ck_bank_transactions_status_link",
        ),
        Index("ix_bank_transactions_client_fecha", "client_id", "fecha"),
    )

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    statement_file_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("statement_files.id", ondelete="SET NULL"), nullable=True
    )
    bank: Mapped[BankCode] = mapped_column(value_enum(BankCode, "bank_code_enum"), nullable=False)

    fecha: Mapped[date] = mapped_column(Date, nullable=False)
    fecha_valor: Mapped[date | None] = mapped_column(Date, nullable=True)
    descripcion: Mapped[str] = mapped_column(Text, nullable=False)
    descripcion_normalizada: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Signed minor units: negative for cargo
    monto: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tipo: Mapped[Direction] = mapped_column(value_enum(Direction, "direction_enum"), nullable=False)
    saldo: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CLP")

    referencia: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rut_contraparte: Mapped[str | None] = mapped_column(String(12), nullable=True)
    numero_documento: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dedup_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    categoria: Mapped[str | None] = mapped_column(String(32), nullable=True)
    categoria_regla_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    categoria_confianza: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[TransactionStatus] = mapped_column(
        value_enum(TransactionStatus, "transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    documento_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("accounting_documents.id"), nullable=True
    )
    match_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Append-only audit trail of confirmation actions
    notas: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)

    candidates: Mapped[list["MatchCandidate"]] = relationship(
        "MatchCandidate",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="MatchCandidate.rank",
    )

    @property
    def is_uncategorized(self) -> bool:
        return self.categoria is None or self.categoria == UNCATEGORIZED
