"""
Reconciliation between local subscriptions and the gateway's view of them.

The gateway is the source of truth for subscription status; this service
pulls (or receives) its state and applies it through the state machine.
Reconciliation is idempotent: applying the same state twice is a no-op.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

from dateutil.parser import isoparse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.exceptions import BillingError
from subhook.models.enums import SubscriptionStatus
from subhook.models.subscription import Subscription
from subhook.services.payment_gateway import PaymentGateway
from subhook.services.subscription_state import SubscriptionStateMachine
from subhook.services.system_resolver import SubscriptionSystemResolver, SystemVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalState:
    status: Optional[str]
    next_payment_date: Optional[datetime] = None


@dataclass(frozen=True)
class MappedState:
    status: SubscriptionStatus
    is_paused: bool = False


EXTERNAL_STATUS_MAP: dict[str, MappedState] = {
    "authorized": MappedState(SubscriptionStatus.ACTIVE),
    "paused": MappedState(SubscriptionStatus.ACTIVE, is_paused=True),
    "cancelled": MappedState(SubscriptionStatus.CANCELED),
    "canceled": MappedState(SubscriptionStatus.CANCELED),
    "pending": MappedState(SubscriptionStatus.PENDING),
    "rejected": MappedState(SubscriptionStatus.PAST_DUE),
    "expired": MappedState(SubscriptionStatus.CANCELED),
}


def map_external_status(raw: Optional[str]) -> Optional[MappedState]:
    """Gateway subscription status -> local state; unknown values map to None."""
    if not raw:
        return None
    return EXTERNAL_STATUS_MAP.get(raw.strip().lower())


def parse_gateway_datetime(value: Any) -> Optional[datetime]:
    """ISO-8601 string from the gateway -> naive UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = isoparse(str(value))
        except ValueError:
            logger.warning("gateway_datetime_unparsable: value=%s", value)
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


@dataclass
class ReconcileResult:
    external_id: str
    outcome: str  # updated | unchanged | not_found | unmapped | legacy | error
    subscription: Optional[Subscription] = None
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "outcome": self.outcome,
            "subscription_id": str(self.subscription.id) if self.subscription is not None else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
        }


class ReconciliationService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        machine: SubscriptionStateMachine,
        resolver: SubscriptionSystemResolver,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.machine = machine
        self.resolver = resolver

    async def pull_external_state(self, external_id: str) -> ExternalState:
        remote = await self.gateway.get_subscription(external_id)
        return ExternalState(
            status=remote.get("status"),
            next_payment_date=parse_gateway_datetime(remote.get("next_payment_date")),
        )

    async def _find_local(self, external_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.external_subscription_id == external_id)
        )
        return result.scalar_one_or_none()

    async def reconcile(
        self,
        external_id: str,
        observed: Optional[ExternalState] = None,
    ) -> ReconcileResult:
        """
        Bring the local row for ``external_id`` in line with the gateway.

        ``observed`` comes from a webhook payload when it carries a status;
        otherwise the state is pulled from the gateway. Does not commit.
        """
        variant = await self.resolver.resolve(external_id)
        if variant == SystemVariant.LEGACY:
            logger.info("reconcile_skipped_legacy: external_id=%s", external_id)
            return ReconcileResult(external_id, "legacy")

        subscription = await self._find_local(external_id)
        if subscription is None:
            logger.warning("reconcile_subscription_not_found: external_id=%s", external_id)
            return ReconcileResult(external_id, "not_found")

        current = SubscriptionStatus(subscription.status)
        if current == SubscriptionStatus.CANCELED:
            return ReconcileResult(external_id, "unchanged", subscription, current, current)

        if observed is not None and observed.status:
            state = observed
        else:
            state = await self.pull_external_state(external_id)
        mapped = map_external_status(state.status)
        if mapped is None:
            logger.warning(
                "reconcile_unmapped_status: external_id=%s status=%s", external_id, state.status
            )
            return ReconcileResult(external_id, "unmapped", subscription, current, current)

        transition = await self.machine.apply_external_state(
            subscription,
            status=mapped.status,
            is_paused=mapped.is_paused,
            next_billing_date=state.next_payment_date,
        )
        new_status = SubscriptionStatus(subscription.status)
        outcome = "updated" if transition.applied else "unchanged"
        logger.info(
            "reconcile_done: external_id=%s outcome=%s from=%s to=%s",
            external_id,
            outcome,
            current.value,
            new_status.value,
        )
        return ReconcileResult(external_id, outcome, subscription, current, new_status)

    async def reconcile_open(self, limit: int = 200) -> list[ReconcileResult]:
        """
        Reconcile every non-canceled subscription that has a gateway id,
        committing after each one. Gateway errors skip that subscription.
        """
        result = await self.db.execute(
            select(Subscription.external_subscription_id)
            .where(
                Subscription.external_subscription_id.is_not(None),
                Subscription.status != SubscriptionStatus.CANCELED.value,
            )
            .order_by(Subscription.updated_at)
            .limit(limit)
        )
        external_ids = list(result.scalars().all())
        results: list[ReconcileResult] = []
        for external_id in external_ids:
            try:
                results.append(await self.reconcile(external_id))
                await self.db.commit()
            except BillingError as exc:
                logger.warning(
                    "reconcile_batch_item_failed: external_id=%s code=%s detail=%s",
                    external_id,
                    exc.code,
                    exc.detail,
                )
                await self.db.rollback()
                self.db.expunge_all()
                results.append(ReconcileResult(external_id, "error"))
        return results
