"""Tests for the JSON log format."""

import json
import logging

from packages.common.logging import JSONFormatter, set_request_id


def _record(msg: str = "Started attempt %s", *args) -> logging.LogRecord:
    return logging.LogRecord("services.attempts.engine", logging.INFO, __file__, 1, msg, args or ("a1",), None)


def test_json_line_carries_service_and_request_id() -> None:
    set_request_id("req-42")
    try:
        line = JSONFormatter("attempt-engine").format(_record())
    finally:
        set_request_id(None)
    data = json.loads(line)
    assert data["msg"] == "Started attempt a1"
    assert data["service"] == "attempt-engine"
    assert data["request_id"] == "req-42"
    assert data["level"] == "INFO"


def test_request_id_is_omitted_outside_requests() -> None:
    data = json.loads(JSONFormatter().format(_record()))
    assert "request_id" not in data
    assert "service" not in data
