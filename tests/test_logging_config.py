"""
Logging setup and billing context propagation.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging

import pytest

from subhook.core.logging_config import (
    BillingContextFilter,
    current_log_context,
    log_context,
    setup_logging,
)
from subhook.services.event_router import WebhookOutcome
from subhook.services.webhook_gate import WebhookIngressGate
from tests.conftest import FakeRedis


def _record() -> logging.LogRecord:
    return logging.LogRecord("subhook.test", logging.INFO, __file__, 1, "hello", None, None)


def test_filter_renders_dash_without_context() -> None:
    record = _record()

    assert BillingContextFilter().filter(record) is True
    assert record.billing_context == "-"


def test_nested_contexts_merge_and_unwind() -> None:
    with log_context(job="run_renewal_sweep"):
        with log_context(subscription_id="sub-1"):
            record = _record()
            BillingContextFilter().filter(record)
            assert record.billing_context == "job=run_renewal_sweep subscription_id=sub-1"
        assert current_log_context() == {"job": "run_renewal_sweep"}

    assert current_log_context() == {}


def test_setup_logging_writes_context_to_file(tmp_path) -> None:
    root = logging.getLogger()
    previous_level = root.level
    previous_handlers = list(root.handlers)
    for handler in previous_handlers:
        root.removeHandler(handler)
    log_file = tmp_path / "billing.log"
    try:
        setup_logging("INFO", debug=False, log_file=str(log_file))
        installed = list(root.handlers)
        with log_context(event_id="evt-9"):
            logging.getLogger("subhook.test").info("payment_recorded")
        for handler in installed:
            handler.flush()
        # second call keeps the installed handlers
        setup_logging("INFO", debug=False, log_file=str(log_file))
        assert root.handlers == installed
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in previous_handlers:
            root.addHandler(handler)
        root.setLevel(previous_level)

    assert len(installed) == 2
    assert "| event_id=evt-9 | payment_recorded" in log_file.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_gate_binds_event_context_while_dispatching(registry) -> None:
    seen = {}

    class RecordingRouter:
        async def dispatch(self, envelope):
            seen.update(current_log_context())
            return WebhookOutcome(event_id=envelope.event_id, event_type="payment", status="processed")

    body = json.dumps({"id": "evt-ctx", "type": "payment", "data": {"id": "pay-1"}}).encode()
    signature = hmac.new(b"checkout-secret", body, hashlib.sha256).hexdigest()
    gate = WebhookIngressGate(RecordingRouter(), registry, FakeRedis())

    decision = await gate.handle(body, signature)

    assert decision.status_code == 200
    assert seen == {"event_id": "evt-ctx", "integration": "CHECKOUT"}
    assert current_log_context() == {}
