"""Categorization rule models."""

from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database import Base
from src.models.base import TimestampMixin, UUIDMixin, value_enum
from src.models.statement import BankCode
from src.models.transaction import Direction


class CategorizationRuleSet(UUIDMixin, TimestampMixin, Base):
    """Named, ordered rule chain. A null client_id makes the set global."""

    __tablename__ = "categorization_rule_sets"

    client_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    rules: Mapped[list["CategorizationRule"]] = relationship(
        "CategorizationRule",
        back_populates="rule_set",
        cascade="all, delete-orphan",
        order_by="CategorizationRule.prioridad",
    )


class CategorizationRule(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "categorization_rules"

    rule_set_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("categorization_rule_sets.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    categoria: Mapped[str] = mapped_column(String(32), nullable=False)
    prioridad: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    palabras_clave: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    patrones: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    monto_min: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    monto_max: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tipo: Mapped[Direction | None] = mapped_column(
        value_enum(Direction, "direction_enum"), nullable=True
    )
    banco: Mapped[BankCode | None] = mapped_column(
        value_enum(BankCode, "bank_code_enum"), nullable=True
    )
    activa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    veces_aplicada: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    rule_set: Mapped[CategorizationRuleSet] = relationship(
        "CategorizationRuleSet", back_populates="rules"
    )
