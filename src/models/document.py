"""Accounting documents (SII) read by the matcher."""

from datetime import date
from enum import Enum

from sqlalchemy import BigInteger, Date, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base
from src.models.base import ClientOwnedMixin, TimestampMixin, UUIDMixin, value_enum


class DocumentType(str, Enum):
    """Tax document types."""

    FACTURA = "factura"
    BOLETA = "boleta"
    NOTA_CREDITO = "nota_credito"
    NOTA_DEBITO = "nota_debito"
    GUIA_DESPACHO = "guia_despacho"


class AccountingDocument(UUIDMixin, ClientOwnedMixin, TimestampMixin, Base):
    """Document owned by the document subsystem. The reconciliation core only reads it."""

    __tablename__ = "accounting_documents"
    __table_args__ = (
        UniqueConstraint(
            "rut_emisor", "document_type", "folio", name="uq_accounting_documents_issuer_folio"
        ),
    )

    document_type: Mapped[DocumentType] = mapped_column(
        value_enum(DocumentType, "document_type_enum"), nullable=False
    )
    folio: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fecha_emision: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    rut_emisor: Mapped[str] = mapped_column(String(12), nullable=False, index=True)
    razon_social: Mapped[str | None] = mapped_column(String(255), nullable=True)
    monto_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CLP")
