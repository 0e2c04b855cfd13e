"""Tests for alert events and sinks."""

import logging
from uuid import uuid4

from src.services.alerts import (
    AlertEvent,
    AlertSeverity,
    AlertType,
    CollectingAlertSink,
    LoggingAlertSink,
)


def _event(**overrides) -> AlertEvent:
    values = {
        "alert_type": AlertType.BALANCE_MISMATCH,
        "severity": AlertSeverity.HIGH,
        "run_id": uuid4(),
        "message": "Statement cartola.csv balance differs by 100",
        "payload": {"subject": "file-1", "difference": 100},
    }
    values.update(overrides)
    return AlertEvent(**values)


def test_dedup_key_uses_transaction_then_subject() -> None:
    txn_id = uuid4()

    assert _event().dedup_key == "balance_mismatch:file-1"
    assert _event(transaction_id=txn_id).dedup_key == f"balance_mismatch:{txn_id}"
    assert _event(payload={}).dedup_key == "balance_mismatch:run"


def test_collecting_sink_keeps_order() -> None:
    sink = CollectingAlertSink()
    first, second = _event(), _event(alert_type=AlertType.UNCATEGORIZED, severity=AlertSeverity.LOW)

    sink.emit(first)
    sink.emit(second)

    assert sink.events == [first, second]


def test_logging_sink_writes_structured_event(caplog) -> None:
    with caplog.at_level(logging.INFO):
        LoggingAlertSink().emit(_event(severity=AlertSeverity.CRITICAL))

    output = caplog.text
    assert "Reconciliation alert" in output
    assert "balance_mismatch" in output
    assert "payload_difference" in output
