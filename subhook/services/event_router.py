"""
Webhook event router.

Writes each notification to the ``webhook_notifications`` ledger before doing
any work, short-circuits redeliveries of already processed events with the
stored outcome, and hands the event to exactly one processor.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.database import utcnow
from subhook.models.enums import ProcessStatus
from subhook.models.subscription import Subscription
from subhook.models.webhook_notification import WebhookNotification
from subhook.services.billing_engine import BillingEngine
from subhook.services.payment_gateway import GatewayRegistry, IntegrationType, PaymentGateway
from subhook.services.payment_ledger import PaymentLedger, map_payment_status
from subhook.services.reconciliation_service import (
    ExternalState,
    ReconciliationService,
    parse_gateway_datetime,
)
from subhook.services.subscription_state import SubscriptionStateMachine
from subhook.services.system_resolver import MetadataSystemResolver, SubscriptionSystemResolver

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "gateway"


class WebhookEventType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    PLAN = "plan"
    MERCHANT_ORDER = "merchant_order"
    INVOICE = "invoice"
    POINT_INTEGRATION = "point_integration_wh"


EVENT_TYPE_ALIASES: dict[str, WebhookEventType] = {
    "payment": WebhookEventType.PAYMENT,
    "subscription": WebhookEventType.SUBSCRIPTION,
    "preapproval": WebhookEventType.SUBSCRIPTION,
    "subscription_preapproval": WebhookEventType.SUBSCRIPTION,
    "plan": WebhookEventType.PLAN,
    "preapproval_plan": WebhookEventType.PLAN,
    "subscription_preapproval_plan": WebhookEventType.PLAN,
    "merchant_order": WebhookEventType.MERCHANT_ORDER,
    "topic_merchant_order_wh": WebhookEventType.MERCHANT_ORDER,
    "invoice": WebhookEventType.INVOICE,
    "subscription_authorized_payment": WebhookEventType.INVOICE,
    "point_integration_wh": WebhookEventType.POINT_INTEGRATION,
}

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {WebhookEventType.SUBSCRIPTION, WebhookEventType.PLAN, WebhookEventType.INVOICE}
)


def normalize_event_type(raw: Optional[str]) -> Union[WebhookEventType, str]:
    """
    Map a raw gateway event type to ``WebhookEventType``.

    Lookup is case-insensitive; dotted actions (``payment.updated``) use
    their prefix. Unknown types are returned unchanged.
    """
    if not raw:
        return ""
    key = str(raw).strip().lower()
    if key in EVENT_TYPE_ALIASES:
        return EVENT_TYPE_ALIASES[key]
    prefix = key.split(".", 1)[0]
    if prefix in EVENT_TYPE_ALIASES:
        return EVENT_TYPE_ALIASES[prefix]
    return str(raw)


def integration_type_for(event_type: Union[WebhookEventType, str]) -> IntegrationType:
    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return IntegrationType.SUBSCRIPTION
    return IntegrationType.CHECKOUT


def event_type_name(event_type: Union[WebhookEventType, str]) -> str:
    return event_type.value if isinstance(event_type, WebhookEventType) else str(event_type)


@dataclass(frozen=True)
class WebhookEnvelope:
    event_type: Union[WebhookEventType, str]
    event_id: str
    resource_id: Optional[str]
    action: Optional[str]
    integration_type: IntegrationType
    raw_payload: dict[str, Any]
    live_mode: bool = False


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # processed | ignored
    detail: dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "status": self.status,
            "detail": self.detail,
        }

    @classmethod
    def from_stored(cls, stored: Optional[dict[str, Any]], row: WebhookNotification) -> WebhookOutcome:
        stored = stored or {}
        return cls(
            event_id=stored.get("event_id", row.event_id),
            event_type=stored.get("event_type", row.event_type),
            status=stored.get("status", ProcessStatus.PROCESSED.value),
            detail=stored.get("detail", {}),
            duplicate=True,
        )


def _as_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except (TypeError, ValueError):
        return None


class EventRouter:
    def __init__(
        self,
        db: AsyncSession,
        registry: GatewayRegistry,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_failures: int = 3,
        remote_timeout: float = 10.0,
        currency: str = "BRL",
        resolver: Optional[SubscriptionSystemResolver] = None,
    ) -> None:
        self.db = db
        self.registry = registry
        self.clock = clock
        self.max_failures = max_failures
        self.remote_timeout = remote_timeout
        self.currency = currency
        self.resolver = resolver or MetadataSystemResolver(db)
        self.ledger = PaymentLedger(db)

    def _machine(self, gateway: Optional[PaymentGateway]) -> SubscriptionStateMachine:
        return SubscriptionStateMachine(
            self.db,
            gateway=gateway,
            clock=self.clock,
            remote_timeout=self.remote_timeout,
            max_failures=self.max_failures,
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def _load_row(self, event_id: str) -> Optional[WebhookNotification]:
        result = await self.db.execute(
            select(WebhookNotification)
            .where(WebhookNotification.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _write_ahead(self, envelope: WebhookEnvelope) -> WebhookNotification:
        row = await self._load_row(envelope.event_id)
        if row is not None:
            return row
        row = WebhookNotification(
            source=WEBHOOK_SOURCE,
            event_type=event_type_name(envelope.event_type),
            event_id=envelope.event_id,
            action=envelope.action,
            resource_id=envelope.resource_id,
            raw_data=envelope.raw_payload,
            process_status=ProcessStatus.PENDING.value,
            live_mode=envelope.live_mode,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError:
            # Outra entrega do mesmo evento gravou primeiro
            await self.db.rollback()
            existing = await self._load_row(envelope.event_id)
            if existing is None:
                raise
            return existing
        return row

    async def _mark(
        self,
        row_id: UUID,
        status: ProcessStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            update(WebhookNotification)
            .where(WebhookNotification.id == row_id)
            .values(
                process_status=status.value,
                processed_at=self.clock(),
                result=result,
                error=error,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        """
        Process one notification at most once.

        Raises whatever the processor raised after marking the ledger row
        ``error``; the ingress gate turns that into a soft accept.
        """
        row = await self._write_ahead(envelope)
        if row.process_status == ProcessStatus.PROCESSED.value:
            logger.info("webhook_duplicate: event_id=%s", envelope.event_id)
            return WebhookOutcome.from_stored(row.result, row)

        row_id = row.id
        try:
            outcome = await self._route(envelope)
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            logger.exception(
                "webhook_processing_failed: event_id=%s event_type=%s",
                envelope.event_id,
                event_type_name(envelope.event_type),
            )
            await self._mark(row_id, ProcessStatus.ERROR, error=f"{type(exc).__name__}: {exc}"[:2000])
            raise

        await self._mark(row_id, ProcessStatus.PROCESSED, result=outcome.as_dict())
        logger.info(
            "webhook_processed: event_id=%s event_type=%s status=%s",
            envelope.event_id,
            outcome.event_type,
            outcome.status,
        )
        return outcome

    async def _route(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        if envelope.event_type == WebhookEventType.PAYMENT:
            return await self._process_payment(envelope)
        if envelope.event_type == WebhookEventType.SUBSCRIPTION:
            return await self._process_subscription(envelope)
        if envelope.event_type == WebhookEventType.MERCHANT_ORDER:
            return await self._process_merchant_order(envelope)
        return self._outcome(envelope, "ignored", reason="unhandled_event_type")

    def _outcome(self, envelope: WebhookEnvelope, status: str, **detail: Any) -> WebhookOutcome:
        return WebhookOutcome(
            event_id=envelope.event_id,
            event_type=event_type_name(envelope.event_type),
            status=status,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Processors
    # ------------------------------------------------------------------

    async def _process_payment(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        external_payment_id = envelope.resource_id
        if not external_payment_id:
            return self._outcome(envelope, "ignored", reason="missing_resource_id")

        gateway = self.registry.get(envelope.integration_type)
        details = await gateway.get_payment(external_payment_id)
        status = map_payment_status(details.get("status"))

        subscription: Optional[Subscription] = None
        payment = await self.ledger.find_by_external_id(external_payment_id)
        if payment is not None:
            if payment.subscription_id is not None:
                subscription = await self.db.get(Subscription, payment.subscription_id)
        else:
            subscription = await self._link_subscription(details, gateway)
            if subscription is not None:
                payment = await self.ledger.claim_pending(subscription.id, external_payment_id)
            if payment is None:
                payment = await self.ledger.record_attempt(
                    subscription_id=subscription.id if subscription is not None else None,
                    amount=details.get("transaction_amount") or 0,
                    currency=details.get("currency_id") or self.currency,
                    external_payment_id=external_payment_id,
                    description=details.get("description"),
                )

        engine = BillingEngine(
            self.db, machine=self._machine(gateway), gateway=gateway, clock=self.clock, currency=self.currency
        )
        transitioned = await engine.settle_payment(
            subscription,
            payment,
            status,
            external_status=details.get("status"),
            status_detail=details.get("status_detail"),
            gateway_response=details,
        )
        return self._outcome(
            envelope,
            "processed",
            payment_id=str(payment.id),
            payment_status=status.value,
            subscription_id=str(subscription.id) if subscription is not None else None,
            subscription_status=subscription.status if subscription is not None else None,
            transitioned=transitioned,
        )

    async def _link_subscription(
        self, details: dict[str, Any], gateway: PaymentGateway
    ) -> Optional[Subscription]:
        """
        Find the local subscription a gateway payment belongs to:
        external_reference, then metadata.subscription_id, then the
        preapproval id, then the merchant order's external_reference.
        """
        metadata = details.get("metadata") or {}
        for candidate in (details.get("external_reference"), metadata.get("subscription_id")):
            subscription_id = _as_uuid(candidate)
            if subscription_id is not None:
                subscription = await self.db.get(Subscription, subscription_id)
                if subscription is not None:
                    return subscription

        preapproval_id = details.get("preapproval_id") or metadata.get("preapproval_id")
        if preapproval_id:
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.external_subscription_id == str(preapproval_id)
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is not None:
                return subscription

        order_id = (details.get("order") or {}).get("id")
        if order_id:
            order = await gateway.get_merchant_order(str(order_id))
            subscription_id = _as_uuid(order.get("external_reference"))
            if subscription_id is not None:
                return await self.db.get(Subscription, subscription_id)

        logger.warning("payment_without_subscription: payment_id=%s", details.get("id"))
        return None

    async def _process_subscription(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        external_id = envelope.resource_id
        if not external_id:
            return self._outcome(envelope, "ignored", reason="missing_resource_id")

        gateway = self.registry.get(envelope.integration_type)
        data = envelope.raw_payload.get("data") or {}
        observed = None
        if data.get("status"):
            observed = ExternalState(
                status=data.get("status"),
                next_payment_date=parse_gateway_datetime(data.get("next_payment_date")),
            )
        reconciler = ReconciliationService(self.db, gateway, self._machine(gateway), self.resolver)
        result = await reconciler.reconcile(external_id, observed)
        return self._outcome(envelope, "processed", **result.as_dict())

    async def _process_merchant_order(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        order_id = envelope.resource_id
        if not order_id:
            return self._outcome(envelope, "ignored", reason="missing_resource_id")

        gateway = self.registry.get(envelope.integration_type)
        order = await gateway.get_merchant_order(order_id)
        subscription_id = _as_uuid(order.get("external_reference"))
        subscription = (
            await self.db.get(Subscription, subscription_id) if subscription_id is not None else None
        )
        if subscription is None:
            return self._outcome(
                envelope, "ignored", reason="subscription_not_found", merchant_order_id=order_id
            )

        transition = await self._machine(gateway).link_merchant_order(subscription, order_id)
        return self._outcome(
            envelope,
            "processed",
            merchant_order_id=order_id,
            subscription_id=str(subscription.id),
            linked=transition.applied,
        )
