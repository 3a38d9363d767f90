"""
Shared fixtures: in-memory async database, Redis and gateway fakes, and row
factories for the billing tables.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

import subhook.models  # noqa: F401
from subhook.core.database import Base
from subhook.core.exceptions import NotFoundError
from subhook.models.coupon import Coupon, CouponPlanRestriction
from subhook.models.enums import CouponStatus, DiscountType, PlanInterval, SubscriptionStatus
from subhook.models.plan import SubscriptionPlan
from subhook.models.subscription import Subscription
from subhook.services.payment_gateway import GatewayRegistry, IntegrationType, PaymentGateway

NOW = datetime(2024, 1, 15, 12, 0, 0)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRedis:
    """
    Minimal async Redis stub for lock operations.
    """

    def __init__(self) -> None:
        self.store: dict[str, Any] = {}

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed


class BrokenRedis:
    """Redis stub whose every call fails like an unreachable server."""

    async def set(self, *args: Any, **kwargs: Any) -> None:
        raise RedisConnectionError("connection refused")

    async def delete(self, *args: Any) -> None:
        raise RedisConnectionError("connection refused")


class FakePaymentGateway(PaymentGateway):
    """
    In-memory gateway.

    ``charge_responses`` is a queue consumed by ``create_payment``; entries
    are response dicts or exceptions to raise. When empty, charges approve.
    ``during_charge`` runs while a charge is in flight, for interleaving
    another writer between the request and its response.
    """

    def __init__(self, integration_type: IntegrationType = IntegrationType.SUBSCRIPTION) -> None:
        self.integration_type = integration_type
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.merchant_orders: dict[str, dict[str, Any]] = {}
        self.charge_responses: list[Any] = []
        self.charges: list[tuple[dict[str, Any], Optional[str]]] = []
        self.status_updates: list[tuple[str, Optional[str]]] = []
        self.get_payment_calls: list[str] = []
        self.update_error: Optional[Exception] = None
        self.update_delay: float = 0.0
        self.during_charge: Optional[Callable[[], Awaitable[None]]] = None

    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        external_id = f"pre-{len(self.subscriptions) + 1}"
        self.subscriptions[external_id] = {"id": external_id, "status": "pending", **payload}
        return dict(self.subscriptions[external_id])

    async def get_subscription(self, external_id: str) -> dict[str, Any]:
        if external_id not in self.subscriptions:
            raise NotFoundError("missing", code="gateway_resource_not_found")
        return dict(self.subscriptions[external_id])

    async def update_subscription(self, external_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.update_error is not None:
            raise self.update_error
        self.status_updates.append((external_id, payload.get("status")))
        current = self.subscriptions.setdefault(external_id, {"id": external_id})
        current.update(payload)
        return dict(current)

    async def create_payment(
        self, payload: dict[str, Any], *, idempotency_key: Optional[str] = None
    ) -> dict[str, Any]:
        self.charges.append((payload, idempotency_key))
        if self.during_charge is not None:
            await self.during_charge()
        response = self.charge_responses.pop(0) if self.charge_responses else {"status": "approved"}
        if isinstance(response, Exception):
            raise response
        payment_id = response.get("id") or f"pay-{len(self.payments) + 1}"
        body = {
            "id": payment_id,
            "transaction_amount": payload.get("transaction_amount"),
            "external_reference": payload.get("external_reference"),
            **response,
        }
        self.payments[payment_id] = body
        return dict(body)

    async def get_payment(self, external_id: str) -> dict[str, Any]:
        self.get_payment_calls.append(external_id)
        if external_id not in self.payments:
            raise NotFoundError("missing", code="gateway_resource_not_found")
        return dict(self.payments[external_id])

    async def get_merchant_order(self, external_id: str) -> dict[str, Any]:
        if external_id not in self.merchant_orders:
            raise NotFoundError("missing", code="gateway_resource_not_found")
        return dict(self.merchant_orders[external_id])


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    File-backed database where every session gets its own connection, so two
    sessions can interleave like two workers.
    """
    file_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", poolclass=NullPool
    )
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    await file_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def registry(gateway: FakePaymentGateway) -> GatewayRegistry:
    """Both integration types share one fake so tests can inspect a single store."""
    return GatewayRegistry(
        {IntegrationType.SUBSCRIPTION: gateway, IntegrationType.CHECKOUT: gateway},
        {IntegrationType.SUBSCRIPTION: "sub-secret", IntegrationType.CHECKOUT: "checkout-secret"},
    )


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

async def make_plan(db: AsyncSession, **overrides: Any) -> SubscriptionPlan:
    values: dict[str, Any] = {
        "name": f"plan-{uuid4().hex[:8]}",
        "price": Decimal("100.00"),
        "interval": PlanInterval.MONTHLY.value,
        "interval_count": 1,
        "trial_days": 0,
        "is_active": True,
    }
    values.update(overrides)
    plan = SubscriptionPlan(**values)
    db.add(plan)
    await db.commit()
    return plan


async def make_coupon(
    db: AsyncSession,
    *,
    restricted_to: Optional[list[SubscriptionPlan]] = None,
    **overrides: Any,
) -> Coupon:
    values: dict[str, Any] = {
        "code": f"SAVE{uuid4().hex[:6].upper()}",
        "discount_type": DiscountType.PERCENTAGE.value,
        "discount_value": Decimal("10"),
        "max_discount_amount": None,
        "start_date": NOW - timedelta(days=30),
        "end_date": NOW + timedelta(days=30),
        "status": CouponStatus.ACTIVE.value,
        "applies_to_all_plans": restricted_to is None,
        "usage_count": 0,
        "total_discount_amount": Decimal("0.00"),
    }
    values.update(overrides)
    coupon = Coupon(**values)
    db.add(coupon)
    await db.flush()
    for plan in restricted_to or []:
        db.add(CouponPlanRestriction(coupon_id=coupon.id, plan_id=plan.id))
    await db.commit()
    return coupon


async def make_subscription(
    db: AsyncSession,
    plan: SubscriptionPlan,
    **overrides: Any,
) -> Subscription:
    values: dict[str, Any] = {
        "user_id": uuid4(),
        "plan_id": plan.id,
        "status": SubscriptionStatus.ACTIVE.value,
        "is_paused": False,
        "start_date": NOW - timedelta(days=31),
        "current_period_start": NOW - timedelta(days=31),
        "current_period_end": NOW - timedelta(days=1),
        "next_billing_date": NOW - timedelta(days=1),
        "renewal_failures": 0,
        "metadata_json": {},
        "version": 0,
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    await db.commit()
    return subscription
