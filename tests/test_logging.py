from __future__ import annotations

import json
import logging

import pytest

from digit_snap.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    _parse_evt_fields,
    get_logger,
    init_logging,
    log_event,
)
from digit_snap.request_context import request_id_var


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord("digit_snap", logging.INFO, __file__, 1, msg, None, None)


def test_env_level_mapping(monkeypatch: pytest.MonkeyPatch) -> None:
    logger = get_logger()
    old_handlers = list(logger.handlers)
    old_level = logger.level
    try:
        monkeypatch.setenv("DIGIT_SNAP_LOG_LEVEL", "warning")
        assert init_logging("json").level == logging.WARNING
        monkeypatch.setenv("DIGIT_SNAP_LOG_LEVEL", "not-a-level")
        assert init_logging("json").level == logging.INFO
        stream_handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(stream_handlers) == 1
    finally:
        logger.setLevel(old_level)
        logger.handlers = old_handlers


def test_evt_fields_are_typed() -> None:
    fields = _parse_evt_fields(
        "EVT event=read_finished latency_ms=12 digit=3 confidence=0.75 inverted=false model_id=m"
    )
    assert fields == {
        "event": "read_finished",
        "latency_ms": 12,
        "digit": 3,
        "confidence": 0.75,
        "inverted": False,
        "model_id": "m",
    }
    assert _parse_evt_fields("plain message") == {}


def test_json_formatter_includes_request_id() -> None:
    token = request_id_var.set("rid-9")
    try:
        line = _JsonFormatter().format(_record("EVT event=read_finished digit=4"))
    finally:
        request_id_var.reset(token)
    payload = json.loads(line)
    assert payload["message"] == "read_finished"
    assert payload["digit"] == 4
    assert payload["request_id"] == "rid-9"


def test_console_formatter_renders_event_and_pairs() -> None:
    out = _ConsoleFormatter().format(_record("model_loaded model_id=m1 arch=mlp"))
    assert "model_loaded" in out
    assert "model_id" in out and "m1" in out
    assert "[INFO]" in out


def test_log_event_skips_mistyped_fields() -> None:
    logger = get_logger()
    captured: list[str] = []

    class _H(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            captured.append(record.getMessage())

    h = _H()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        log_event("read_finished", {"digit": "seven", "latency_ms": 5, "inverted": True})
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    assert captured == ["EVT event=read_finished latency_ms=5 inverted=true"]
