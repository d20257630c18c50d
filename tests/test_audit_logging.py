"""Tests for the audit trail and JSON logging."""

import json
import logging
import sys

import pytest

from nas_pool.audit import AUDIT_LOG_ENV_VAR, AuditLog, record_storage_event
from nas_pool.logging import JsonFormatter, init_logging


def test_record_storage_event_appends_json_lines(tmp_path):
    path = tmp_path / "nested" / "audit.log"

    assert record_storage_event("STORAGE_CONFIGURED", {"dataCount": 2}, path=str(path))
    assert AuditLog(str(path)).record("SNAPRAID_SCRUB", percentage=10)

    entries = [json.loads(line) for line in path.read_text().splitlines()]
    assert [entry["event"] for entry in entries] == ["STORAGE_CONFIGURED", "SNAPRAID_SCRUB"]
    assert entries[0]["payload"] == {"dataCount": 2}
    assert entries[1]["payload"] == {"percentage": 10}
    assert entries[0]["timestamp"].endswith("Z")


def test_audit_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "env-audit.log"
    monkeypatch.setenv(AUDIT_LOG_ENV_VAR, str(path))

    record_storage_event("STORAGE_CONFIG")

    assert json.loads(path.read_text())["payload"] == {}


def test_unwritable_audit_log_is_reported(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("")

    with caplog.at_level(logging.ERROR, logger="nas_pool.audit"):
        assert not record_storage_event("STORAGE_CONFIG", path=str(blocker / "audit.log"))
    assert "failed to write storage audit entry" in caplog.text


def make_record(**extra):
    record = logging.LogRecord("nas_pool.pipeline", logging.ERROR, __file__, 1,
                               "Array configure failed at step %s", ("mount",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_operation_metadata():
    payload = json.loads(JsonFormatter().format(make_record(step="mount", disk="sda", unrelated=1)))

    assert payload["level"] == "ERROR"
    assert payload["logger"] == "nas_pool.pipeline"
    assert payload["message"] == "Array configure failed at step mount"
    assert payload["step"] == "mount"
    assert payload["disk"] == "sda"
    assert "unrelated" not in payload
    assert "exc_info" not in payload


def test_json_formatter_renders_exceptions():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = make_record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exc_info"]


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


def test_init_logging_is_idempotent(clean_root_logger):
    first = init_logging("DEBUG")
    second = init_logging(logging.INFO)

    assert first is second
    assert isinstance(first.formatter, JsonFormatter)
    assert sum(isinstance(h.formatter, JsonFormatter) for h in clean_root_logger.handlers) == 1
    assert clean_root_logger.level == logging.INFO
