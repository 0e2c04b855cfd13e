"""Tests for logging helpers."""

import logging

import pytest
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer

from src import logger as logger_module


def test_select_renderer_uses_console_in_debug(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", True)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, ConsoleRenderer)


def test_select_renderer_uses_json_in_production(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", False)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, JSONRenderer)


def test_log_timing_reports_duration_and_context(caplog) -> None:
    log = logger_module.get_logger("tests.timing")

    with caplog.at_level(logging.INFO):
        with logger_module.log_timing("parse_statement", logger=log, bank="bci") as ctx:
            ctx["rows"] = 3

    assert ctx["duration_ms"] >= 0
    assert "parse_statement completed" in caplog.text
    assert "'rows': 3" in caplog.text
    assert "'bank': 'bci'" in caplog.text


def test_log_timing_logs_when_body_raises(caplog) -> None:
    log = logger_module.get_logger("tests.timing")

    with caplog.at_level(logging.INFO):
        with pytest.raises(RuntimeError):
            with logger_module.log_timing("import", logger=log):
                raise RuntimeError("boom")

    assert "import completed" in caplog.text


@pytest.mark.asyncio
async def test_async_log_timing(caplog) -> None:
    log = logger_module.get_logger("tests.timing")

    with caplog.at_level(logging.INFO):
        async with logger_module.async_log_timing("pipeline_step", logger=log, step="match"):
            pass

    assert "pipeline_step completed" in caplog.text
    assert "'step': 'match'" in caplog.text


def test_log_exception_includes_error_fields(caplog) -> None:
    log = logger_module.get_logger("tests.errors")

    with caplog.at_level(logging.WARNING):
        logger_module.log_exception(
            log,
            ValueError("bad folio"),
            "Document skipped",
            level="warning",
            include_traceback=False,
            documento_id="abc",
        )

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "'error': 'bad folio'" in caplog.text
    assert "'error_type': 'ValueError'" in caplog.text
    assert "'documento_id': 'abc'" in caplog.text
