"""Alert events produced by the pipeline and the sinks that receive them."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from src.logger import get_logger

logger = get_logger(__name__)


class AlertType(str, Enum):
    BALANCE_MISMATCH = "balance_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    STATEMENT_FAILED = "statement_failed"
    LOW_CONFIDENCE_MATCH = "low_confidence_match"
    UNCATEGORIZED = "uncategorized"
    RUN_FAILED = "run_failed"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertEvent:
    alert_type: AlertType
    severity: AlertSeverity
    run_id: UUID
    message: str
    transaction_id: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        """Stable per-run identity so a re-run step never emits twice."""
        subject = self.transaction_id or self.payload.get("subject") or "run"
        return f"{self.alert_type.value}:{subject}"[:128]


class AlertSink(Protocol):
    def emit(self, event: AlertEvent) -> None: ...


class LoggingAlertSink:
    """Writes alerts as structured log events."""

    _levels = {
        AlertSeverity.LOW: "info",
        AlertSeverity.MEDIUM: "warning",
        AlertSeverity.HIGH: "warning",
        AlertSeverity.CRITICAL: "error",
    }

    def emit(self, event: AlertEvent) -> None:
        log_method = getattr(logger, self._levels[event.severity])
        log_method(
            "Reconciliation alert",
            alert_type=event.alert_type.value,
            severity=event.severity.value,
            run_id=str(event.run_id),
            transaction_id=str(event.transaction_id) if event.transaction_id else None,
            message=event.message,
            **{f"payload_{key}": value for key, value in event.payload.items()},
        )


class CollectingAlertSink:
    """Keeps emitted alerts in memory."""

    def __init__(self) -> None:
        self.events: list[AlertEvent] = []

    def emit(self, event: AlertEvent) -> None:
        self.events.append(event)
