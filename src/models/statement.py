"""Bank statement file models."""

from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, ForeignKey, Integer, LargeBinary, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base
from src.models.base import ClientOwnedMixin, TimestampMixin, UUIDMixin, value_enum


class BankCode(str, Enum):
    """Supported bank statement layouts."""

    BANCO_CHILE = "bancochile"
    BANCO_ESTADO = "bancoestado"
    SANTANDER = "santander"
    BCI = "bci"


class FileFormat(str, Enum):
    PDF = "pdf"
    CSV = "csv"
    EXCEL = "excel"


class StatementFileStatus(str, Enum):
    """Import status of an uploaded statement file."""

    PENDING = "pending"
    IMPORTED = "imported"
    FAILED = "failed"


class StatementFile(UUIDMixin, ClientOwnedMixin, TimestampMixin, Base):
    """Raw statement file attached to a pipeline run, consumed by the import step."""

    __tablename__ = "statement_files"

    run_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("pipeline_runs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bank: Mapped[BankCode] = mapped_column(value_enum(BankCode, "bank_code_enum"), nullable=False)
    file_format: Mapped[FileFormat] = mapped_column(
        value_enum(FileFormat, "file_format_enum"), nullable=False
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CLP")

    status: Mapped[StatementFileStatus] = mapped_column(
        value_enum(StatementFileStatus, "statement_file_status_enum"),
        nullable=False,
        default=StatementFileStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_rows: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)

    # Header balances in minor units, when the statement reports them
    saldo_inicial: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    saldo_final: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
