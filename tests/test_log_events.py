from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from tbw.api.app import create_app
from tbw.log_events import log_event


def test_log_event_emits_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("tbw.test")
    with caplog.at_level(logging.INFO, logger="tbw.test"):
        log_event(log, "settlement_confirmed", id="abc", height=12)
        log_event(log, "ignored", level=logging.DEBUG)

    assert len(caplog.records) == 1
    payload = json.loads(caplog.records[0].getMessage())
    assert payload["event"] == "settlement_confirmed"
    assert payload["id"] == "abc"
    assert payload["height"] == 12
    assert "ts_ms" in payload


def test_unserialisable_fields_fall_back_to_key_value(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("tbw.test")
    with caplog.at_level(logging.INFO, logger="tbw.test"):
        log_event(log, "odd", value={1, 2})
    assert caplog.records[0].getMessage().startswith("event=odd value=")


def _request_events(caplog: pytest.LogCaptureFixture) -> list:
    out = []
    for rec in caplog.records:
        if rec.name != "tbw.http":
            continue
        payload = json.loads(rec.getMessage())
        if payload["event"] == "operator_request":
            out.append((rec.levelno, payload))
    return out


def test_operator_requests_are_logged_with_request_id(caplog: pytest.LogCaptureFixture, monkeypatch) -> None:
    monkeypatch.delenv("TBW_LOG_REQUESTS", raising=False)
    app = create_app(boot_runtime=False)
    with caplog.at_level(logging.DEBUG, logger="tbw.http"):
        with TestClient(app) as c:
            health = c.get("/health", headers={"x-request-id": "req-1"})
            pay = c.post("/pay")

    assert health.headers["x-request-id"] == "req-1"
    assert int(pay.headers["x-response-time-ms"]) >= 0

    events = _request_events(caplog)
    assert [(lvl, e["path"], e["status"]) for lvl, e in events] == [
        (logging.DEBUG, "/health", 200),
        (logging.WARNING, "/pay", 500),
    ]
    assert events[0][1]["request_id"] == "req-1"


def test_request_events_can_be_disabled(caplog: pytest.LogCaptureFixture, monkeypatch) -> None:
    monkeypatch.setenv("TBW_LOG_REQUESTS", "off")
    app = create_app(boot_runtime=False)
    with caplog.at_level(logging.DEBUG, logger="tbw.http"):
        with TestClient(app) as c:
            r = c.get("/health")

    assert "x-request-id" in r.headers
    assert _request_events(caplog) == []
