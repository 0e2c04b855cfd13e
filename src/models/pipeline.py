"""Reconciliation pipeline run models."""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base
from src.models.base import ClientOwnedMixin, TimestampMixin, UUIDMixin, value_enum


class PipelineState(str, Enum):
    """Pipeline run state. Step states double as the step names."""

    PENDING = "pending"
    IMPORT = "import"
    NORMALIZE = "normalize"
    CATEGORIZE = "categorize"
    MATCH = "match"
    VALIDATE = "validate"
    ALERT = "alert"
    APPROVE = "approve"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class OperatorAction(str, Enum):
    """Operator request recorded while a step is executing."""

    PAUSE = "pause"
    FAIL = "fail"


def empty_resultado() -> dict[str, int]:
    return {
        "transacciones_importadas": 0,
        "transacciones_normalizadas": 0,
        "transacciones_categorizadas": 0,
        "transacciones_matched": 0,
        "alertas_generadas": 0,
        "errores": 0,
    }


class PipelineRun(UUIDMixin, ClientOwnedMixin, TimestampMixin, Base):
    """One reconciliation run for a (client, period) scope."""

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index("ix_pipeline_runs_client_period", "client_id", "period_year", "period_month"),
    )

    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    state: Mapped[PipelineState] = mapped_column(
        value_enum(PipelineState, "pipeline_state_enum"),
        nullable=False,
        default=PipelineState.PENDING,
    )
    # 1-based index of the step being (or about to be) executed; 0 before start
    paso_actual: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pasos: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    paused_from: Mapped[str | None] = mapped_column(String(16), nullable=True)
    failed_step: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # Step claimed by an executor; cleared when its result is recorded
    executing_step: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # Pause or fail requested while a step was executing, applied at the step boundary
    pending_action: Mapped[str | None] = mapped_column(String(16), nullable=True)
    pending_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    resultado: Mapped[dict[str, int]] = mapped_column(
        JSON, nullable=False, default=empty_resultado
    )
    validation_issues: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Compare-and-set guard for every state write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def period_label(self) -> str:
        return f"{self.period_year:04d}-{self.period_month:02d}"


class PipelineAlert(UUIDMixin, Base):
    """Alert emitted by the alert step, persisted once per dedup key."""

    __tablename__ = "pipeline_alerts"
    __table_args__ = (UniqueConstraint("run_id", "dedup_key", name="uq_pipeline_alerts_run_key"),)

    run_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dedup_key: Mapped[str] = mapped_column(String(128), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
