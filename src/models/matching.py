"""Persisted match candidates and patterns learned from confirmations."""

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database import Base
from src.models.base import ClientOwnedMixin, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from src.models.transaction import BankTransaction


class MatchCandidate(UUIDMixin, Base):
    """Snapshot of the last matcher result for one transaction."""

    __tablename__ = "match_candidates"
    __table_args__ = (
        UniqueConstraint(
            "transaction_id", "documento_id", name="uq_match_candidates_txn_document"
        ),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    documento_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("accounting_documents.id", ondelete="CASCADE"), nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    reasons: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    amount_diff: Mapped[int] = mapped_column(BigInteger, nullable=False)
    day_diff: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    transaction: Mapped["BankTransaction"] = relationship(
        "BankTransaction", back_populates="candidates"
    )


class MatchPattern(UUIDMixin, ClientOwnedMixin, TimestampMixin, Base):
    """Description keywords that were confirmed against an issuer RUT."""

    __tablename__ = "match_patterns"
    __table_args__ = (
        UniqueConstraint(
            "client_id", "rut_emisor", "keywords", name="uq_match_patterns_client_rut_keywords"
        ),
    )

    keywords: Mapped[str] = mapped_column(String(255), nullable=False)
    rut_emisor: Mapped[str] = mapped_column(String(12), nullable=False)
    times_confirmed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
