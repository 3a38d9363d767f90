"""
Coupon discount calculation and usage accounting tests.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from subhook.models.coupon import CouponUsage
from subhook.services.coupon_service import CouponService, apply_coupon, to_money
from tests.conftest import NOW, make_coupon, make_plan


def _coupon(**overrides: Any) -> SimpleNamespace:
    values: dict[str, Any] = {
        "id": uuid4(),
        "code": "PROMO",
        "discount_type": "PERCENTAGE",
        "discount_value": Decimal("10"),
        "max_discount_amount": None,
        "start_date": NOW - timedelta(days=1),
        "end_date": NOW + timedelta(days=1),
        "status": "ACTIVE",
        "applies_to_all_plans": True,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_percentage_discount_is_capped_by_max_discount_amount() -> None:
    coupon = _coupon(discount_value=Decimal("150"), max_discount_amount=Decimal("40"))

    result = apply_coupon(Decimal("100"), coupon, NOW)

    assert result.applied is True
    assert result.discount == Decimal("40.00")
    assert result.final_price == Decimal("60.00")


def test_fixed_discount_never_exceeds_base_price() -> None:
    coupon = _coupon(discount_type="FIXED", discount_value=Decimal("250"))

    result = apply_coupon(Decimal("100"), coupon, NOW)

    assert result.discount == Decimal("100.00")
    assert result.final_price == Decimal("0.00")


def test_negative_discount_value_is_clamped_to_zero() -> None:
    coupon = _coupon(discount_type="FIXED", discount_value=Decimal("-5"))

    result = apply_coupon(Decimal("100"), coupon, NOW)

    assert result.discount == Decimal("0.00")
    assert result.final_price == Decimal("100.00")


def test_percentage_discount_rounds_half_up_to_cents() -> None:
    coupon = _coupon(discount_value=Decimal("10"))

    result = apply_coupon(Decimal("1.25"), coupon, NOW)

    assert result.discount == Decimal("0.13")
    assert result.final_price == Decimal("1.12")


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"status": "INACTIVE"}, "coupon_inactive"),
        ({"end_date": NOW - timedelta(seconds=1)}, "coupon_expired"),
        ({"start_date": NOW + timedelta(days=1)}, "coupon_not_started"),
        ({"applies_to_all_plans": False}, "coupon_not_applicable"),
    ],
)
def test_invalid_coupon_yields_zero_discount_with_reason(
    overrides: dict[str, Any],
    reason: str,
) -> None:
    result = apply_coupon(Decimal("100"), _coupon(**overrides), NOW, plan_id=uuid4())

    assert result.applied is False
    assert result.reason == reason
    assert result.discount == Decimal("0.00")
    assert result.final_price == Decimal("100.00")


def test_missing_coupon_is_not_applied() -> None:
    result = apply_coupon(Decimal("49.90"), None, NOW)

    assert result.applied is False
    assert result.reason == "coupon_not_found"
    assert result.final_price == Decimal("49.90")


def test_restricted_coupon_applies_only_to_listed_plans() -> None:
    plan_id = uuid4()
    coupon = _coupon(applies_to_all_plans=False)

    allowed = apply_coupon(Decimal("100"), coupon, NOW, plan_id=plan_id, restricted_plan_ids={plan_id})
    denied = apply_coupon(Decimal("100"), coupon, NOW, plan_id=uuid4(), restricted_plan_ids={plan_id})

    assert allowed.applied is True
    assert denied.applied is False


def test_to_money_quantizes_floats_and_strings() -> None:
    assert to_money(10) == Decimal("10.00")
    assert to_money("2.005") == Decimal("2.01")
    assert to_money(0.1 + 0.2) == Decimal("0.30")


@pytest.mark.asyncio
async def test_evaluate_reads_plan_restrictions(db) -> None:
    plan = await make_plan(db)
    other_plan = await make_plan(db)
    coupon = await make_coupon(db, restricted_to=[plan])
    service = CouponService(db)

    assert (await service.evaluate(coupon, plan.price, NOW, plan.id)).applied is True
    assert (await service.evaluate(coupon, plan.price, NOW, other_plan.id)).applied is False


@pytest.mark.asyncio
async def test_record_usage_increments_counters_once_per_payment(db) -> None:
    coupon = await make_coupon(db)
    service = CouponService(db)
    payment_id = uuid4()

    first = await service.record_usage(
        coupon_id=coupon.id,
        user_id=uuid4(),
        subscription_id=None,
        payment_id=payment_id,
        discount_amount=Decimal("10"),
        original_amount=Decimal("100"),
    )
    second = await service.record_usage(
        coupon_id=coupon.id,
        user_id=uuid4(),
        subscription_id=None,
        payment_id=payment_id,
        discount_amount=Decimal("10"),
        original_amount=Decimal("100"),
    )
    await db.commit()
    await db.refresh(coupon)

    assert first is True
    assert second is False
    assert coupon.usage_count == 1
    assert coupon.total_discount_amount == Decimal("10.00")
    count = await db.scalar(select(func.count()).select_from(CouponUsage))
    assert count == 1


@pytest.mark.asyncio
async def test_lookup_by_code_ignores_case_of_stored_code(db) -> None:
    coupon = await make_coupon(db, code="welcome10")
    service = CouponService(db)

    assert (await service.get_by_code("WELCOME10")).id == coupon.id
    assert (await service.get_by_code(" Welcome10 ")).id == coupon.id
    assert await service.get_by_code("welcome") is None
