"""
Subscription lifecycle state machine.

States: PENDING -> ACTIVE <-> PAST_DUE, any -> CANCELED (terminal).
``is_paused`` is a flag that is only meaningful while ACTIVE.

Every write is a compare-and-set UPDATE guarded by ``version`` and the set of
statuses the transition is allowed from. A writer that loses the race re-reads
the row and recomputes its change from the fresh state, up to
``MAX_CAS_ATTEMPTS`` times. When the fresh state no longer allows the
transition the result is ``applied=False`` and nothing is overwritten.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.database import utcnow
from subhook.core.exceptions import ConflictError, NotFoundError
from subhook.core.partial_update import build_partial_update
from subhook.models.enums import SubscriptionStatus
from subhook.models.plan import SubscriptionPlan
from subhook.models.subscription import Subscription
from subhook.services.billing_engine import BillingEngine, RenewalResult, compute_period_end
from subhook.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

NON_TERMINAL = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)

MAX_CAS_ATTEMPTS = 3

# Status enviado ao gateway para cada operacao local
REMOTE_PAUSED = "paused"
REMOTE_AUTHORIZED = "authorized"
REMOTE_CANCELLED = "cancelled"

# (allowed_from, changes) computed from the current row, or None to skip
TransitionPlan = Optional[tuple[Iterable[SubscriptionStatus], dict[str, Any]]]


@dataclass
class TransitionResult:
    subscription: Subscription
    applied: bool
    previous_status: Optional[SubscriptionStatus]
    # True only when every attempt hit a concurrent writer
    lost_race: bool = False


class SubscriptionStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        *,
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        remote_timeout: float = 10.0,
        max_failures: int = 3,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.remote_timeout = remote_timeout
        self.max_failures = max_failures

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get(self, subscription_id: UUID) -> Subscription:
        subscription = await self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", code="subscription_not_found")
        return subscription

    async def get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = await self.db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan not found", code="plan_not_found")
        return plan

    async def list_for_user(self, user_id: UUID) -> list[Subscription]:
        """All subscriptions of a user, newest first."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_active_for_user(self, user_id: UUID) -> Optional[Subscription]:
        """Most recent ACTIVE subscription of the user (paused ones included)."""
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def has_active_subscription(self, user_id: UUID) -> bool:
        return await self.find_active_for_user(user_id) is not None

    # ------------------------------------------------------------------
    # Compare-and-set core
    # ------------------------------------------------------------------

    async def _compare_and_set(
        self,
        subscription: Subscription,
        allowed_from: Iterable[SubscriptionStatus],
        changes: dict[str, Any],
        *,
        event: str,
    ) -> TransitionResult:
        previous = SubscriptionStatus(subscription.status)
        values = build_partial_update({**changes, "updated_at": self.clock()})
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.version == subscription.version,
                Subscription.status.in_([status.value for status in allowed_from]),
            )
            .values(**values, version=Subscription.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.refresh(subscription)

        if result.rowcount != 1:
            logger.warning(
                "subscription_transition_lost_race: id=%s event=%s status=%s version=%s",
                subscription.id,
                event,
                subscription.status,
                subscription.version,
            )
            return TransitionResult(subscription, False, previous, lost_race=True)

        logger.info(
            "subscription_transition: id=%s event=%s from=%s to=%s",
            subscription.id,
            event,
            previous.value,
            subscription.status,
        )
        return TransitionResult(subscription, True, previous)

    async def _transition(
        self,
        subscription: Subscription,
        plan_for: Callable[[Subscription], TransitionPlan],
        *,
        event: str,
    ) -> TransitionResult:
        """
        Run ``plan_for`` against the current row and compare-and-set the result.

        ``_compare_and_set`` refreshes the row on a miss, so each retry plans
        from what the concurrent writer left behind.
        """
        result = TransitionResult(subscription, False, SubscriptionStatus(subscription.status))
        for _ in range(MAX_CAS_ATTEMPTS):
            planned = plan_for(subscription)
            if planned is None:
                return TransitionResult(
                    subscription, False, SubscriptionStatus(subscription.status)
                )
            allowed_from, changes = planned
            result = await self._compare_and_set(
                subscription, allowed_from, changes, event=event
            )
            if result.applied:
                return result
        logger.warning(
            "subscription_transition_gave_up: id=%s event=%s attempts=%s",
            subscription.id,
            event,
            MAX_CAS_ATTEMPTS,
        )
        return result

    async def _propagate(self, subscription: Subscription, remote_status: str) -> None:
        """Best-effort push of a local transition to the gateway."""
        if self.gateway is None or not subscription.external_subscription_id:
            return
        try:
            await asyncio.wait_for(
                self.gateway.set_subscription_status(
                    subscription.external_subscription_id, remote_status
                ),
                timeout=self.remote_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "subscription_remote_sync_timeout: id=%s remote_status=%s",
                subscription.id,
                remote_status,
            )
        except Exception:
            logger.exception(
                "subscription_remote_sync_failed: id=%s remote_status=%s",
                subscription.id,
                remote_status,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        user_id: UUID,
        plan: SubscriptionPlan,
        start_date: Optional[datetime] = None,
        coupon_id: Optional[UUID] = None,
        discount_amount: Optional[Any] = None,
        original_price: Optional[Any] = None,
        external_subscription_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """Insert a PENDING subscription with its first billing period."""
        start = start_date or self.clock()
        period_end = compute_period_end(start, plan.interval, plan.interval_count)
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.PENDING.value,
            is_paused=False,
            start_date=start,
            current_period_start=start,
            current_period_end=period_end,
            next_billing_date=period_end,
            renewal_failures=0,
            coupon_id=coupon_id,
            discount_amount=discount_amount,
            original_price=original_price,
            external_subscription_id=external_subscription_id,
            metadata_json=metadata or {},
            version=0,
        )
        self.db.add(subscription)
        await self.db.flush()
        logger.info(
            "subscription_created: id=%s user_id=%s plan_id=%s",
            subscription.id,
            user_id,
            plan.id,
        )
        return TransitionResult(subscription, True, None)

    async def on_payment_approved(
        self,
        subscription: Subscription,
        plan: Optional[SubscriptionPlan] = None,
    ) -> TransitionResult:
        """
        Activate (or keep active) after an approved payment.

        The new period always starts at approval time, not at the old
        period end. CANCELED subscriptions are left untouched.
        """
        if subscription.status == SubscriptionStatus.CANCELED.value:
            logger.info("payment_approved_on_canceled_subscription: id=%s", subscription.id)
            return TransitionResult(subscription, False, SubscriptionStatus.CANCELED)

        plan = plan or await self.get_plan(subscription.plan_id)
        now = self.clock()
        period_end = compute_period_end(now, plan.interval, plan.interval_count)

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.status == SubscriptionStatus.CANCELED.value:
                return None
            return NON_TERMINAL, {
                "status": SubscriptionStatus.ACTIVE.value,
                "renewal_failures": 0,
                "current_period_start": now,
                "current_period_end": period_end,
                "next_billing_date": period_end,
            }

        return await self._transition(subscription, plan_for, event="payment_approved")

    async def on_payment_rejected_or_canceled(
        self, subscription: Subscription
    ) -> TransitionResult:
        """Count a failed charge; reaching ``max_failures`` moves to PAST_DUE."""

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.status == SubscriptionStatus.CANCELED.value:
                return None
            failures = (current.renewal_failures or 0) + 1
            changes: dict[str, Any] = {"renewal_failures": failures}
            if failures >= self.max_failures:
                changes["status"] = SubscriptionStatus.PAST_DUE.value
                changes["is_paused"] = False
                changes["paused_at"] = None
            return NON_TERMINAL, changes

        return await self._transition(subscription, plan_for, event="payment_failed")

    async def mark_renewal_attempt(self, subscription: Subscription) -> TransitionResult:
        """
        Stamp ``renewal_attempt_date`` before charging.

        Retries past unrelated writes, but gives up as soon as another
        writer has stamped its own attempt.
        """
        seen_attempt = subscription.renewal_attempt_date

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.renewal_attempt_date != seen_attempt or current.is_paused:
                return None
            return (
                (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE),
                {"renewal_attempt_date": self.clock()},
            )

        return await self._transition(subscription, plan_for, event="renewal_attempt")

    async def link_merchant_order(
        self, subscription: Subscription, merchant_order_id: str
    ) -> TransitionResult:
        def plan_for(current: Subscription) -> TransitionPlan:
            if current.external_merchant_order_id == merchant_order_id:
                return None
            return tuple(SubscriptionStatus), {"external_merchant_order_id": merchant_order_id}

        return await self._transition(subscription, plan_for, event="merchant_order_linked")

    async def pause(self, subscription: Subscription) -> TransitionResult:
        if subscription.status != SubscriptionStatus.ACTIVE.value or subscription.is_paused:
            raise ConflictError(
                "Only active, unpaused subscriptions can be paused",
                code="invalid_state",
            )

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.status != SubscriptionStatus.ACTIVE.value or current.is_paused:
                return None
            return (SubscriptionStatus.ACTIVE,), {"is_paused": True, "paused_at": self.clock()}

        result = await self._transition(subscription, plan_for, event="pause")
        await self.db.commit()
        if result.applied:
            await self._propagate(subscription, REMOTE_PAUSED)
        return result

    async def resume(self, subscription: Subscription) -> TransitionResult:
        if not subscription.is_paused:
            raise ConflictError("Subscription is not paused", code="invalid_state")

        def plan_for(current: Subscription) -> TransitionPlan:
            if not current.is_paused:
                return None
            return (SubscriptionStatus.ACTIVE,), {"is_paused": False, "paused_at": None}

        result = await self._transition(subscription, plan_for, event="resume")
        await self.db.commit()
        if result.applied:
            await self._propagate(subscription, REMOTE_AUTHORIZED)
        return result

    async def cancel(
        self, subscription: Subscription, reason: Optional[str] = None
    ) -> TransitionResult:
        """Cancel; calling it on an already canceled subscription is a no-op."""

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.status == SubscriptionStatus.CANCELED.value:
                return None
            return NON_TERMINAL, {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": self.clock(),
                "cancel_reason": reason,
                "is_paused": False,
                "paused_at": None,
            }

        result = await self._transition(subscription, plan_for, event="cancel")
        await self.db.commit()
        if result.applied:
            await self._propagate(subscription, REMOTE_CANCELLED)
        return result

    async def renew(self, subscription_id: UUID) -> RenewalResult:
        engine = BillingEngine(self.db, machine=self, gateway=self.gateway, clock=self.clock)
        return await engine.renew(subscription_id)

    async def apply_external_state(
        self,
        subscription: Subscription,
        *,
        status: SubscriptionStatus,
        is_paused: bool = False,
        next_billing_date: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Overwrite local state with what the gateway reports.

        Used by reconciliation only; nothing is pushed back to the gateway.
        """
        now = self.clock()
        paused = is_paused and status == SubscriptionStatus.ACTIVE

        def plan_for(current: Subscription) -> TransitionPlan:
            if current.status == SubscriptionStatus.CANCELED.value:
                return None
            changes: dict[str, Any] = {}
            if current.status != status.value:
                changes["status"] = status.value
            if bool(current.is_paused) != paused:
                changes["is_paused"] = paused
                changes["paused_at"] = now if paused else None
            if status == SubscriptionStatus.CANCELED:
                changes["canceled_at"] = now
                changes["cancel_reason"] = "canceled_by_gateway"
            if next_billing_date is not None and current.next_billing_date != next_billing_date:
                changes["next_billing_date"] = next_billing_date
            if not changes:
                return None
            return NON_TERMINAL, changes

        return await self._transition(subscription, plan_for, event="external_state")
