"""
Event router tests: type normalization, write-ahead ledger, duplicate
short-circuit and each processor.
"""
from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from subhook.core.exceptions import NotFoundError
from subhook.models.enums import PaymentStatus, ProcessStatus, SubscriptionStatus
from subhook.models.payment import Payment
from subhook.models.webhook_notification import WebhookNotification
from subhook.services.event_router import (
    EventRouter,
    WebhookEnvelope,
    WebhookEventType,
    integration_type_for,
    normalize_event_type,
)
from subhook.services.payment_gateway import IntegrationType
from subhook.services.payment_ledger import PaymentLedger
from tests.conftest import NOW, make_plan, make_subscription


def _envelope(event_type, resource_id, event_id="evt-1", **payload) -> WebhookEnvelope:
    event_type = normalize_event_type(event_type)
    return WebhookEnvelope(
        event_type=event_type,
        event_id=event_id,
        resource_id=resource_id,
        action=payload.pop("action", None),
        integration_type=integration_type_for(event_type),
        raw_payload={"id": event_id, "data": {"id": resource_id}, **payload},
    )


async def _ledger_row(db, event_id: str) -> WebhookNotification:
    result = await db.execute(
        select(WebhookNotification)
        .where(WebhookNotification.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("payment", WebhookEventType.PAYMENT),
        ("PAYMENT", WebhookEventType.PAYMENT),
        ("payment.updated", WebhookEventType.PAYMENT),
        ("preapproval", WebhookEventType.SUBSCRIPTION),
        ("subscription_preapproval", WebhookEventType.SUBSCRIPTION),
        ("subscription_preapproval_plan", WebhookEventType.PLAN),
        ("topic_merchant_order_wh", WebhookEventType.MERCHANT_ORDER),
        ("subscription_authorized_payment", WebhookEventType.INVOICE),
        ("point_integration_wh", WebhookEventType.POINT_INTEGRATION),
    ],
)
def test_normalize_event_type(raw: str, expected: WebhookEventType) -> None:
    assert normalize_event_type(raw) == expected


def test_unknown_event_type_passes_through() -> None:
    assert normalize_event_type("chargebacks") == "chargebacks"
    assert normalize_event_type(None) == ""


@pytest.mark.parametrize(
    ("event_type", "integration"),
    [
        (WebhookEventType.SUBSCRIPTION, IntegrationType.SUBSCRIPTION),
        (WebhookEventType.PLAN, IntegrationType.SUBSCRIPTION),
        (WebhookEventType.INVOICE, IntegrationType.SUBSCRIPTION),
        (WebhookEventType.PAYMENT, IntegrationType.CHECKOUT),
        (WebhookEventType.MERCHANT_ORDER, IntegrationType.CHECKOUT),
        ("chargebacks", IntegrationType.CHECKOUT),
    ],
)
def test_integration_type_for(event_type, integration: IntegrationType) -> None:
    assert integration_type_for(event_type) == integration


@pytest.mark.asyncio
async def test_approved_payment_settles_pending_attempt(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan, status=SubscriptionStatus.PENDING.value)
    attempt = await PaymentLedger(db).record_attempt(subscription_id=sub.id, amount=Decimal("100"))
    await db.commit()
    gateway.payments["pay-9"] = {
        "id": "pay-9",
        "status": "approved",
        "status_detail": "accredited",
        "external_reference": str(sub.id),
        "transaction_amount": 100,
    }

    outcome = await EventRouter(db, registry, clock=clock).dispatch(_envelope("payment", "pay-9"))

    assert outcome.status == "processed"
    assert outcome.detail["transitioned"] is True
    assert attempt.external_payment_id == "pay-9"
    assert attempt.status == PaymentStatus.APPROVED.value
    assert sub.status == SubscriptionStatus.ACTIVE.value
    row = await _ledger_row(db, "evt-1")
    assert row.process_status == ProcessStatus.PROCESSED.value
    assert row.result["detail"]["payment_status"] == PaymentStatus.APPROVED.value


@pytest.mark.asyncio
async def test_redelivery_returns_stored_outcome_without_refetching(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan, status=SubscriptionStatus.PENDING.value)
    gateway.payments["pay-1"] = {"id": "pay-1", "status": "approved", "external_reference": str(sub.id)}
    router = EventRouter(db, registry, clock=clock)

    first = await router.dispatch(_envelope("payment", "pay-1"))
    second = await router.dispatch(_envelope("payment", "pay-1"))

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.status == first.status
    assert second.detail == first.detail
    assert gateway.get_payment_calls == ["pay-1"]
    count = await db.execute(select(Payment).where(Payment.external_payment_id == "pay-1"))
    assert len(count.scalars().all()) == 1


@pytest.mark.asyncio
async def test_processing_error_marks_row_and_allows_retry(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan, status=SubscriptionStatus.PENDING.value)
    sub_id = sub.id
    router = EventRouter(db, registry, clock=clock)

    with pytest.raises(NotFoundError):
        await router.dispatch(_envelope("payment", "pay-late"))

    row = await _ledger_row(db, "evt-1")
    assert row.process_status == ProcessStatus.ERROR.value
    assert "NotFoundError" in row.error

    gateway.payments["pay-late"] = {"id": "pay-late", "status": "approved", "external_reference": str(sub_id)}
    outcome = await router.dispatch(_envelope("payment", "pay-late"))

    assert outcome.status == "processed"
    assert (await _ledger_row(db, "evt-1")).process_status == ProcessStatus.PROCESSED.value


@pytest.mark.asyncio
async def test_payment_linked_through_metadata_creates_ledger_row(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan, renewal_failures=1)
    gateway.payments["pay-7"] = {
        "id": "pay-7",
        "status": "rejected",
        "status_detail": "cc_rejected_insufficient_amount",
        "transaction_amount": 100,
        "metadata": {"subscription_id": str(sub.id)},
    }

    outcome = await EventRouter(db, registry, clock=clock).dispatch(_envelope("payment", "pay-7"))

    payment = await PaymentLedger(db).find_by_external_id("pay-7")
    assert payment.subscription_id == sub.id
    assert payment.status == PaymentStatus.REJECTED.value
    assert payment.amount == Decimal("100.00")
    assert sub.renewal_failures == 2
    assert outcome.detail["subscription_id"] == str(sub.id)


@pytest.mark.asyncio
async def test_payment_linked_through_preapproval_id(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(
        db, plan, status=SubscriptionStatus.PENDING.value, external_subscription_id="pre-42"
    )
    gateway.payments["pay-3"] = {"id": "pay-3", "status": "approved", "preapproval_id": "pre-42"}

    await EventRouter(db, registry, clock=clock).dispatch(_envelope("payment", "pay-3"))

    assert sub.status == SubscriptionStatus.ACTIVE.value
    assert sub.current_period_start == NOW


@pytest.mark.asyncio
async def test_orphan_payment_is_recorded_without_subscription(db, registry, gateway, clock) -> None:
    gateway.payments["pay-5"] = {"id": "pay-5", "status": "approved", "transaction_amount": 12.5}

    outcome = await EventRouter(db, registry, clock=clock).dispatch(_envelope("payment", "pay-5"))

    assert outcome.detail["subscription_id"] is None
    assert outcome.detail["transitioned"] is False
    payment = await PaymentLedger(db).find_by_external_id("pay-5")
    assert payment.subscription_id is None


@pytest.mark.asyncio
async def test_subscription_event_uses_payload_status(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan, external_subscription_id="pre-7")
    envelope = _envelope("subscription_preapproval", "pre-7")
    envelope.raw_payload["data"]["status"] = "paused"

    outcome = await EventRouter(db, registry, clock=clock).dispatch(envelope)

    assert outcome.detail["outcome"] == "updated"
    assert sub.is_paused is True
    assert gateway.status_updates == []


@pytest.mark.asyncio
async def test_merchant_order_links_subscription(db, registry, gateway, clock) -> None:
    plan = await make_plan(db)
    sub = await make_subscription(db, plan)
    gateway.merchant_orders["mo-1"] = {"id": "mo-1", "external_reference": str(sub.id)}

    outcome = await EventRouter(db, registry, clock=clock).dispatch(
        _envelope("topic_merchant_order_wh", "mo-1")
    )

    assert outcome.detail["linked"] is True
    assert sub.external_merchant_order_id == "mo-1"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored_but_recorded(db, registry, clock) -> None:
    outcome = await EventRouter(db, registry, clock=clock).dispatch(
        _envelope("point_integration_wh", "pt-1", event_id="evt-pt")
    )

    assert outcome.status == "ignored"
    assert outcome.detail == {"reason": "unhandled_event_type"}
    assert (await _ledger_row(db, "evt-pt")).process_status == ProcessStatus.PROCESSED.value
