"""
Payment ledger - append-only record of charge attempts.

Rows are keyed by ``external_payment_id`` once the gateway assigns one;
repeat notifications for the same payment update the row in place.
None of these methods commit; the caller owns the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.database import utcnow
from subhook.models.enums import PaymentStatus
from subhook.models.payment import Payment
from subhook.services.coupon_service import to_money

logger = logging.getLogger(__name__)

PAYMENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "in_process": PaymentStatus.IN_PROCESS,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.CHARGED_BACK,
    "pending": PaymentStatus.PENDING,
}


def map_payment_status(raw: Optional[str]) -> PaymentStatus:
    """Gateway payment status -> local status; anything unknown stays PENDING."""
    if not raw:
        return PaymentStatus.PENDING
    return PAYMENT_STATUS_MAP.get(raw.strip().lower(), PaymentStatus.PENDING)


class PaymentLedger:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record_attempt(
        self,
        *,
        subscription_id: Optional[UUID],
        amount: Any,
        currency: str = "BRL",
        status: PaymentStatus = PaymentStatus.PENDING,
        external_payment_id: Optional[str] = None,
        discount_amount: Optional[Any] = None,
        original_amount: Optional[Any] = None,
        coupon_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Payment:
        """Insert a new payment row and flush it so it has an id."""
        payment = Payment(
            subscription_id=subscription_id,
            amount=to_money(amount),
            currency=currency,
            status=status.value,
            external_payment_id=external_payment_id,
            discount_amount=to_money(discount_amount) if discount_amount is not None else None,
            original_amount=to_money(original_amount) if original_amount is not None else None,
            coupon_code=coupon_code,
            description=description,
        )
        self.db.add(payment)
        await self.db.flush()
        logger.info(
            "payment_recorded: payment_id=%s subscription_id=%s amount=%s status=%s",
            payment.id,
            subscription_id,
            payment.amount,
            status.value,
        )
        return payment

    async def find_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.external_payment_id == external_payment_id)
        )
        return result.scalar_one_or_none()

    async def find_open_attempt(self, subscription_id: UUID) -> Optional[Payment]:
        """Latest PENDING attempt of the subscription the gateway has not seen yet."""
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.subscription_id == subscription_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.external_payment_id.is_(None),
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def claim_pending(
        self, subscription_id: UUID, external_payment_id: str
    ) -> Optional[Payment]:
        """Attach a gateway payment id to the subscription's open attempt."""
        payment = await self.find_open_attempt(subscription_id)
        if payment is None:
            return None
        payment.external_payment_id = external_payment_id
        await self.db.flush()
        logger.info(
            "payment_claimed: payment_id=%s external_payment_id=%s",
            payment.id,
            external_payment_id,
        )
        return payment

    async def update_status(
        self,
        payment: Payment,
        status: PaymentStatus,
        *,
        external_status: Optional[str] = None,
        status_detail: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
        payment_date: Optional[datetime] = None,
    ) -> bool:
        """Apply a status report. Returns True when the status actually changed."""
        changed = payment.status != status.value
        payment.status = status.value
        if external_status is not None:
            payment.external_status = external_status
        if status_detail is not None:
            payment.external_status_detail = status_detail
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        if status == PaymentStatus.APPROVED and payment.payment_date is None:
            payment.payment_date = payment_date or utcnow()
        await self.db.flush()
        if changed:
            logger.info("payment_status_changed: payment_id=%s status=%s", payment.id, status.value)
        return changed

    async def history(self, subscription_id: UUID, limit: int = 50) -> list[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.subscription_id == subscription_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
