"""
Coupon validation, discount calculation and usage accounting.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.models.coupon import Coupon, CouponPlanRestriction, CouponUsage
from subhook.models.enums import CouponStatus, DiscountType

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Quantize to cents, rounding half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountResult:
    discount: Decimal
    final_price: Decimal
    applied: bool
    reason: Optional[str] = None


def coupon_rejection_reason(
    coupon: Optional[Coupon],
    now: datetime,
    *,
    plan_id: Optional[UUID] = None,
    restricted_plan_ids: Optional[set[UUID]] = None,
) -> Optional[str]:
    """Return why ``coupon`` cannot be used right now, or None if it can."""
    if coupon is None:
        return "coupon_not_found"
    if coupon.status != CouponStatus.ACTIVE.value:
        return "coupon_inactive"
    if coupon.start_date and now < coupon.start_date:
        return "coupon_not_started"
    if coupon.end_date and now > coupon.end_date:
        return "coupon_expired"
    if not coupon.applies_to_all_plans:
        if plan_id is None or plan_id not in (restricted_plan_ids or set()):
            return "coupon_not_applicable"
    return None


def apply_coupon(
    base_price: Any,
    coupon: Optional[Coupon],
    now: datetime,
    *,
    plan_id: Optional[UUID] = None,
    restricted_plan_ids: Optional[set[UUID]] = None,
) -> DiscountResult:
    """
    Compute the discount a coupon grants on ``base_price``.

    PERCENTAGE coupons take ``value``% of the base, FIXED coupons take
    ``value``. The result is clamped to ``[0, max_discount_amount]`` and then
    to the base price, so the final price is never negative. An invalid
    coupon yields a zero discount and a reason instead of raising.
    """
    base = to_money(base_price)
    reason = coupon_rejection_reason(
        coupon, now, plan_id=plan_id, restricted_plan_ids=restricted_plan_ids
    )
    if reason is not None:
        return DiscountResult(discount=ZERO, final_price=base, applied=False, reason=reason)

    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        raw = base * value / Decimal(100)
    else:
        raw = value

    if coupon.max_discount_amount is not None:
        raw = min(raw, Decimal(str(coupon.max_discount_amount)))
    raw = min(max(raw, ZERO), base)

    discount = to_money(raw)
    return DiscountResult(discount=discount, final_price=base - discount, applied=True)


class CouponService:
    """Database access for coupons."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, coupon_id: UUID) -> Optional[Coupon]:
        return await self.db.get(Coupon, coupon_id)

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        """Case-insensitive on both sides; rows written outside the API may be lowercase."""
        result = await self.db.execute(
            select(Coupon).where(func.upper(Coupon.code) == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def restricted_plan_ids(self, coupon_id: UUID) -> set[UUID]:
        result = await self.db.execute(
            select(CouponPlanRestriction.plan_id).where(
                CouponPlanRestriction.coupon_id == coupon_id
            )
        )
        return set(result.scalars().all())

    async def evaluate(
        self,
        coupon: Optional[Coupon],
        base_price: Any,
        now: datetime,
        plan_id: UUID,
    ) -> DiscountResult:
        restricted: set[UUID] = set()
        if coupon is not None and not coupon.applies_to_all_plans:
            restricted = await self.restricted_plan_ids(coupon.id)
        return apply_coupon(
            base_price, coupon, now, plan_id=plan_id, restricted_plan_ids=restricted
        )

    async def record_usage(
        self,
        *,
        coupon_id: UUID,
        user_id: UUID,
        subscription_id: Optional[UUID],
        payment_id: UUID,
        discount_amount: Decimal,
        original_amount: Decimal,
    ) -> bool:
        """
        Count one use of a coupon for an approved payment.

        Counters are bumped with a single UPDATE so concurrent approvals
        never lose an increment. Returns False when this payment was already
        counted. Does not commit.
        """
        existing = await self.db.execute(
            select(CouponUsage.id).where(CouponUsage.payment_id == payment_id)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("coupon_usage_already_recorded: payment_id=%s", payment_id)
            return False

        discount = to_money(discount_amount)
        await self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .values(
                usage_count=Coupon.usage_count + 1,
                total_discount_amount=Coupon.total_discount_amount + discount,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.add(
            CouponUsage(
                coupon_id=coupon_id,
                user_id=user_id,
                subscription_id=subscription_id,
                payment_id=payment_id,
                discount_amount=discount,
                original_amount=to_money(original_amount),
            )
        )
        await self.db.flush()
        logger.info(
            "coupon_usage_recorded: coupon_id=%s payment_id=%s discount=%s",
            coupon_id,
            payment_id,
            discount,
        )
        return True
