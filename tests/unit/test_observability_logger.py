# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from typing import Any

import pytest

from observability import logger, metrics


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    monkeypatch.setattr(logger, "_enabled", True)
    return lines


def test_log_event_emits_valid_jsonl(captured: list[str]) -> None:
    """
    Contract:
    - log_event emits exactly one JSONL line
    - payload fields are preserved, ts_ms is added
    - output sink is patchable
    """
    payload: dict[str, Any] = {
        "event_type": "TEST",
        "value": 123,
    }

    logger.log_event(payload)

    assert len(captured) == 1
    decoded = json.loads(captured[0])
    assert isinstance(decoded.pop("ts_ms"), int)
    assert decoded == payload


def test_caller_supplied_ts_ms_is_kept(captured: list[str]) -> None:
    logger.log_event({"event_type": "TEST", "ts_ms": 5})

    assert json.loads(captured[0])["ts_ms"] == 5


def test_unserializable_payload_falls_back(captured: list[str]) -> None:
    logger.log_event({"event_type": "TEST", "blob": object()})

    decoded = json.loads(captured[0])
    assert decoded["event_type"] == "LOGGER_SERIALIZATION_ERROR"
    assert "blob" in decoded["original_event_repr"]


def test_disabled_logger_is_silent(captured: list[str]) -> None:
    logger.set_enabled(False)
    try:
        logger.log_event({"event_type": "TEST"})
    finally:
        logger.set_enabled(True)

    assert captured == []


def test_log_exception_records_type_and_message(captured: list[str]) -> None:
    logger.log_exception("upload_failed", ValueError("bad blob"), message_id="m1")

    decoded = json.loads(captured[0])
    assert decoded["event_type"] == "upload_failed"
    assert decoded["exception"] == "ValueError"
    assert decoded["message"] == "bad blob"
    assert decoded["message_id"] == "m1"


def test_timed_emits_once_even_when_block_raises(captured: list[str]) -> None:
    with pytest.raises(RuntimeError):
        with metrics.timed("request_headers_latency", message_id="m1"):
            raise RuntimeError("boom")

    decoded = json.loads(captured[0])
    assert len(captured) == 1
    assert decoded["metric"] == "request_headers_latency"
    assert decoded["message_id"] == "m1"
    assert metrics.active_timer_count() == 0


def test_stop_unknown_timer_returns_none(captured: list[str]) -> None:
    assert metrics.stop_timer("timer_missing") is None
    assert captured == []
