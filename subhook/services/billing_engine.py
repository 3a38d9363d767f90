"""
Renewal / billing engine.

Charges subscriptions through the gateway, records every attempt in the
payment ledger and feeds the outcome to the state machine. Business failures
(rejected charges, invalid state) come back as ``RenewalResult`` data; only
infrastructure failures raise.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.database import utcnow
from subhook.core.logging_config import log_context
from subhook.core.exceptions import (
    BillingError,
    ConflictError,
    GatewayNotConfiguredError,
    NotFoundError,
    PaymentGatewayError,
    ServiceUnavailableError,
    ValidationError,
)
from subhook.models.enums import PaymentStatus, PlanInterval, SubscriptionStatus
from subhook.models.payment import Payment
from subhook.models.plan import SubscriptionPlan
from subhook.models.subscription import Subscription
from subhook.services.coupon_service import CouponService, DiscountResult, ZERO, to_money
from subhook.services.payment_gateway import PaymentGateway
from subhook.services.payment_ledger import PaymentLedger, map_payment_status

if TYPE_CHECKING:
    from subhook.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)

MONTHS_PER_INTERVAL: dict[PlanInterval, int] = {
    PlanInterval.MONTHLY: 1,
    PlanInterval.QUARTERLY: 3,
    PlanInterval.SEMIANNUAL: 6,
    PlanInterval.ANNUAL: 12,
}

RENEWABLE = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


def compute_period_end(
    start: datetime, interval: Any, interval_count: Optional[int] = 1
) -> datetime:
    """
    End of a billing period starting at ``start``.

    Calendar month arithmetic: Jan 31 + 1 month is Feb 28/29.
    """
    raw = interval.value if isinstance(interval, PlanInterval) else str(interval).upper()
    try:
        months = MONTHS_PER_INTERVAL[PlanInterval(raw)]
    except ValueError as exc:
        raise ValidationError(f"Unknown plan interval: {interval}", code="invalid_interval") from exc
    count = 1 if interval_count is None else interval_count
    if count < 1:
        raise ValidationError("interval_count must be positive", code="invalid_interval")
    return start + relativedelta(months=months * count)


@dataclass
class RenewalResult:
    success: bool
    subscription: Optional[Subscription]
    payment: Optional[Payment]
    new_status: Optional[SubscriptionStatus]
    error: Optional[str] = None
    subscription_id: Optional[UUID] = None


@dataclass
class CheckoutResult:
    subscription: Subscription
    payment: Payment
    discount: DiscountResult


class BillingEngine:
    def __init__(
        self,
        db: AsyncSession,
        *,
        machine: SubscriptionStateMachine,
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "BRL",
    ) -> None:
        self.db = db
        self.machine = machine
        self.gateway = gateway
        self.clock = clock
        self.currency = currency
        self.ledger = PaymentLedger(db)
        self.coupons = CouponService(db)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        *,
        user_id: UUID,
        plan_id: UUID,
        coupon_code: Optional[str] = None,
        start_date: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> CheckoutResult:
        """
        Create a PENDING subscription and its first PENDING payment.

        Coupons are validated strictly here: an unusable coupon fails the
        checkout instead of silently charging full price.
        """
        plan = await self.db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan not found", code="plan_not_found")
        if not plan.is_active:
            raise ValidationError("Plan is not available", code="plan_inactive")

        now = self.clock()
        coupon = None
        discount = DiscountResult(discount=ZERO, final_price=to_money(plan.price), applied=False)
        if coupon_code:
            coupon = await self.coupons.get_by_code(coupon_code)
            if coupon is None:
                raise NotFoundError("Coupon not found", code="coupon_not_found")
            discount = await self.coupons.evaluate(coupon, plan.price, now, plan.id)
            if not discount.applied:
                raise ValidationError("Coupon cannot be applied", code=discount.reason or "coupon_invalid")

        created = await self.machine.create(
            user_id=user_id,
            plan=plan,
            start_date=start_date,
            coupon_id=coupon.id if discount.applied else None,
            discount_amount=discount.discount if discount.applied else None,
            original_price=to_money(plan.price) if discount.applied else None,
            metadata=metadata,
        )
        subscription = created.subscription
        payment = await self.ledger.record_attempt(
            subscription_id=subscription.id,
            amount=discount.final_price,
            currency=self.currency,
            discount_amount=discount.discount if discount.applied else None,
            original_amount=plan.price,
            coupon_code=coupon.code if discount.applied else None,
            description=f"Subscription {plan.name}",
        )

        if self.gateway is not None:
            try:
                remote = await self.gateway.create_subscription(
                    {
                        "reason": plan.name,
                        "external_reference": str(subscription.id),
                        "preapproval_plan_id": plan.external_plan_id,
                        "auto_recurring": {
                            "frequency": MONTHS_PER_INTERVAL[PlanInterval(plan.interval)]
                            * (1 if plan.interval_count is None else plan.interval_count),
                            "frequency_type": "months",
                            "transaction_amount": float(discount.final_price),
                            "currency_id": self.currency,
                        },
                    }
                )
            except BillingError:
                await self.db.rollback()
                raise
            subscription.external_subscription_id = str(remote.get("id") or "") or None

        await self.db.commit()
        logger.info(
            "checkout_created: subscription_id=%s payment_id=%s amount=%s coupon=%s",
            subscription.id,
            payment.id,
            payment.amount,
            coupon_code,
        )
        return CheckoutResult(subscription=subscription, payment=payment, discount=discount)

    # ------------------------------------------------------------------
    # Settlement (shared with the webhook router)
    # ------------------------------------------------------------------

    async def settle_payment(
        self,
        subscription: Optional[Subscription],
        payment: Payment,
        new_status: PaymentStatus,
        *,
        external_status: Optional[str] = None,
        status_detail: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Record a payment status and, on entry into APPROVED or REJECTED,
        drive the subscription state machine.

        A repeated report of the same status is a re-confirmation: the row is
        refreshed but nothing is credited twice. Returns True when the
        subscription actually moved. Coupon usage is only counted for an
        approval that was applied. Raises ``ConflictError`` when concurrent
        writers kept the transition from landing, so the caller rolls back
        and the notification can be processed again. Does not commit.
        """
        changed = await self.ledger.update_status(
            payment,
            new_status,
            external_status=external_status,
            status_detail=status_detail,
            gateway_response=gateway_response,
            payment_date=self.clock(),
        )
        if not changed:
            logger.info(
                "payment_reconfirmed: payment_id=%s status=%s", payment.id, new_status.value
            )
            return False
        if subscription is None:
            return False

        if new_status == PaymentStatus.APPROVED:
            result = await self.machine.on_payment_approved(subscription)
        elif new_status == PaymentStatus.REJECTED:
            result = await self.machine.on_payment_rejected_or_canceled(subscription)
        else:
            return False

        if result.lost_race:
            raise ConflictError(
                "Subscription kept changing while settling payment",
                code="concurrent_update",
            )
        if result.applied and new_status == PaymentStatus.APPROVED:
            await self._record_coupon_usage(subscription, payment)
        return result.applied

    async def _record_coupon_usage(self, subscription: Subscription, payment: Payment) -> None:
        if not payment.coupon_code or not payment.discount_amount:
            return
        if to_money(payment.discount_amount) <= ZERO:
            return
        coupon = await self.coupons.get_by_code(payment.coupon_code)
        if coupon is None:
            logger.warning(
                "coupon_usage_skipped: payment_id=%s code=%s reason=coupon_missing",
                payment.id,
                payment.coupon_code,
            )
            return
        await self.coupons.record_usage(
            coupon_id=coupon.id,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            payment_id=payment.id,
            discount_amount=payment.discount_amount,
            original_amount=payment.original_amount or payment.amount,
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew(self, subscription_id: UUID) -> RenewalResult:
        subscription = await self.machine.get(subscription_id)
        current = SubscriptionStatus(subscription.status)

        if subscription.status not in RENEWABLE:
            return RenewalResult(
                success=False,
                subscription=subscription,
                payment=None,
                new_status=current,
                error=f"invalid_state:{subscription.status}",
                subscription_id=subscription.id,
            )
        if subscription.is_paused:
            return RenewalResult(
                success=False,
                subscription=subscription,
                payment=None,
                new_status=current,
                error="subscription_paused",
                subscription_id=subscription.id,
            )
        if self.gateway is None:
            raise GatewayNotConfiguredError()

        plan = await self.machine.get_plan(subscription.plan_id)
        now = self.clock()

        coupon = await self.coupons.get(subscription.coupon_id) if subscription.coupon_id else None
        discount = DiscountResult(discount=ZERO, final_price=to_money(plan.price), applied=False)
        if coupon is not None:
            discount = await self.coupons.evaluate(coupon, plan.price, now, plan.id)
            if not discount.applied:
                # Cupom vencido/inativo na renovacao: cobra preco cheio
                logger.info(
                    "renewal_coupon_ignored: subscription_id=%s coupon_id=%s reason=%s",
                    subscription.id,
                    coupon.id,
                    discount.reason,
                )

        attempt = await self.machine.mark_renewal_attempt(subscription)
        if not attempt.applied:
            await self.db.commit()
            return RenewalResult(
                success=False,
                subscription=subscription,
                payment=None,
                new_status=SubscriptionStatus(subscription.status),
                error="concurrent_update",
                subscription_id=subscription.id,
            )

        # A charge that never reached the gateway is retried under the same
        # attempt (and so the same idempotency key) instead of a new one.
        payment = await self.ledger.find_open_attempt(subscription.id)
        if payment is not None:
            logger.info(
                "renewal_attempt_reused: subscription_id=%s payment_id=%s",
                subscription.id,
                payment.id,
            )
        else:
            payment = await self.ledger.record_attempt(
                subscription_id=subscription.id,
                amount=discount.final_price,
                currency=self.currency,
                discount_amount=discount.discount if discount.applied else None,
                original_amount=plan.price,
                coupon_code=coupon.code if discount.applied and coupon is not None else None,
                description=f"Renewal {plan.name}",
            )
        # Commit the attempt so it is visible even if the charge blows up.
        await self.db.commit()

        try:
            response = await self.gateway.create_payment(
                {
                    "transaction_amount": float(payment.amount),
                    "description": payment.description,
                    "external_reference": str(subscription.id),
                    "preapproval_id": subscription.external_subscription_id,
                    "metadata": {
                        "subscription_id": str(subscription.id),
                        "payment_id": str(payment.id),
                    },
                },
                idempotency_key=str(payment.id),
            )
        except PaymentGatewayError as exc:
            logger.info(
                "renewal_charge_rejected: subscription_id=%s payment_id=%s detail=%s",
                subscription.id,
                payment.id,
                exc.detail,
            )
            response = {"status": "rejected", "status_detail": exc.detail}
        except ServiceUnavailableError:
            logger.warning(
                "renewal_charge_unavailable: subscription_id=%s payment_id=%s",
                subscription.id,
                payment.id,
            )
            raise

        if response.get("id") is not None:
            payment.external_payment_id = str(response["id"])
        status = map_payment_status(response.get("status"))
        await self.settle_payment(
            subscription,
            payment,
            status,
            external_status=response.get("status"),
            status_detail=response.get("status_detail"),
            gateway_response=response,
        )
        await self.db.commit()

        new_status = SubscriptionStatus(subscription.status)
        if status == PaymentStatus.APPROVED:
            logger.info("renewal_succeeded: subscription_id=%s payment_id=%s", subscription.id, payment.id)
            return RenewalResult(True, subscription, payment, new_status, None, subscription.id)
        if status == PaymentStatus.REJECTED:
            logger.info(
                "renewal_failed: subscription_id=%s failures=%s status=%s",
                subscription.id,
                subscription.renewal_failures,
                new_status.value,
            )
            error = "payment_rejected"
        else:
            error = "awaiting_confirmation"
        return RenewalResult(False, subscription, payment, new_status, error, subscription.id)

    async def renew_due(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
        retry_after: timedelta = timedelta(hours=24),
    ) -> list[RenewalResult]:
        """
        Renew every subscription whose billing date has passed.

        One failing subscription never stops the batch; its error is
        returned in its ``RenewalResult``.
        """
        now = now or self.clock()
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status.in_(RENEWABLE),
                Subscription.is_paused.is_(False),
                Subscription.next_billing_date <= now,
                or_(
                    Subscription.renewal_attempt_date.is_(None),
                    Subscription.renewal_attempt_date <= now - retry_after,
                ),
            )
            .order_by(Subscription.next_billing_date)
            .limit(limit)
        )
        due_ids = list((await self.db.execute(stmt)).scalars().all())
        results: list[RenewalResult] = []
        for subscription_id in due_ids:
            try:
                with log_context(subscription_id=subscription_id):
                    results.append(await self.renew(subscription_id))
            except BillingError as exc:
                logger.warning(
                    "renewal_batch_item_failed: subscription_id=%s code=%s detail=%s",
                    subscription_id,
                    exc.code,
                    exc.detail,
                )
                await self.db.rollback()
                self.db.expunge_all()
                results.append(
                    RenewalResult(False, None, None, None, exc.code, subscription_id)
                )
        return results
