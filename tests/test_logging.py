import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import orjson
import pytest
import structlog

from signalgate.config.settings import MonitoringConfig
from signalgate.monitoring.logging import REDACTED, SecretRedactor, configure_logging, request_context


@pytest.fixture
def errors_log(workspace_tmp_path: Path):
    configure_logging("INFO", str(workspace_tmp_path), MonitoringConfig(), secrets=["hunter2-secret"])
    try:
        yield workspace_tmp_path / "errors.log"
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
        structlog.reset_defaults()


def _records(path: Path) -> list[dict]:
    return [orjson.loads(line) for line in path.read_text().splitlines()]


def test_errors_are_written_as_json(errors_log: Path) -> None:
    log = structlog.get_logger("signalgate.test")
    log.info("not_an_error")
    log.error("ledger_write_failed", entry_id="e-1")

    records = _records(errors_log)
    assert len(records) == 1
    assert records[0]["event"] == "ledger_write_failed"
    assert records[0]["entry_id"] == "e-1"
    assert records[0]["level"] == "error"
    assert logging.getLogger("httpx").level == logging.WARNING


def test_secrets_never_reach_the_log(errors_log: Path) -> None:
    log = structlog.get_logger("signalgate.test")
    log.error(
        "auth_debug",
        signature="abc123",
        headers={"Authorization": "Bearer token-1", "User-Agent": "tv"},
        error="bad body secret hunter2-secret",
    )

    record = _records(errors_log)[0]
    assert record["signature"] == REDACTED
    assert record["headers"] == {"Authorization": REDACTED, "User-Agent": "tv"}
    assert record["error"] == f"bad body secret {REDACTED}"


def test_request_context_is_bound_and_released(errors_log: Path) -> None:
    log = structlog.get_logger("signalgate.test")
    with request_context("req-1", "10.0.0.7"):
        log.error("broker_attempt_failed")
    log.error("after_request")

    inside, outside = _records(errors_log)
    assert inside["request_id"] == "req-1"
    assert inside["remote_ip"] == "10.0.0.7"
    assert "request_id" not in outside


def test_short_values_are_not_treated_as_secrets() -> None:
    redactor = SecretRedactor(["", "ab"])
    assert redactor(None, "error", {"event": "about"}) == {"event": "about"}
