"""Tests for structured logging and request_id propagation."""

import json
import logging

from agrilease.core.logging import JsonFormatter, log_event, request_id_ctx_var


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="agrilease"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_id_in_error_response(client):
    response = client.get("/api/rental-requests/non-existent", headers={"X-User-Id": "farmer_1"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_log_event_carries_domain_context(caplog):
    token = request_id_ctx_var.set("rid-123")
    try:
        with caplog.at_level(logging.INFO, logger="agrilease"):
            log_event("info", "escrow.released", escrow_id="esc_1", payment_ref="pi_1", extra={"amount": 500000})
    finally:
        request_id_ctx_var.reset(token)

    record = caplog.records[-1]
    assert record.request_id == "rid-123"
    assert record.escrow_id == "esc_1"
    assert record.amount == "500000"


def test_long_extra_values_are_truncated(caplog):
    with caplog.at_level(logging.INFO, logger="agrilease"):
        log_event("warning", "billing.provider_error", extra={"error": "x" * 2000})
    assert caplog.records[-1].error.endswith("...<truncated>")


def test_json_formatter_includes_context_fields():
    record = logging.LogRecord("agrilease", logging.INFO, __file__, 1, "rental.created", None, None)
    record.request_id = "rid-1"
    record.rental_request_id = "req_1"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "rental.created"
    assert payload["rental_request_id"] == "req_1"
    assert "escrow_id" not in payload
