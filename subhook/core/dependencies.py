"""
FastAPI dependencies wiring settings, database and gateway registry into
the billing services.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.core.config import settings
from subhook.core.database import get_db
from subhook.core.exceptions import GatewayNotConfiguredError
from subhook.core.redis import get_redis
from subhook.services.billing_engine import BillingEngine
from subhook.services.event_router import EventRouter
from subhook.services.payment_gateway import GatewayRegistry, IntegrationType, PaymentGateway
from subhook.services.reconciliation_service import ReconciliationService
from subhook.services.subscription_state import SubscriptionStateMachine
from subhook.services.system_resolver import build_resolver
from subhook.services.webhook_gate import WebhookIngressGate


def get_gateway_registry(request: Request) -> GatewayRegistry:
    """Registry built once in the application lifespan."""
    return request.app.state.gateway_registry


def _subscription_gateway(registry: GatewayRegistry) -> Optional[PaymentGateway]:
    try:
        return registry.get(IntegrationType.SUBSCRIPTION)
    except GatewayNotConfiguredError:
        return None


def get_state_machine(
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> SubscriptionStateMachine:
    """
    State machine bound to the request session.

    Example:
        @router.post("/{id}/pause")
        async def pause(machine: SubscriptionStateMachine = Depends(get_state_machine)):
            ...
    """
    return SubscriptionStateMachine(
        db,
        gateway=_subscription_gateway(registry),
        remote_timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        max_failures=settings.RENEWAL_MAX_FAILURES,
    )


def get_billing_engine(
    db: AsyncSession = Depends(get_db),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> BillingEngine:
    return BillingEngine(
        db,
        machine=machine,
        gateway=machine.gateway,
        currency=settings.DEFAULT_CURRENCY,
    )


def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> ReconciliationService:
    try:
        gateway = registry.get(IntegrationType.SUBSCRIPTION)
    except GatewayNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.detail
        ) from exc
    return ReconciliationService(
        db, gateway, machine, build_resolver(db, settings.LEGACY_MIGRATION_ACTIVE)
    )


def get_webhook_gate(
    db: AsyncSession = Depends(get_db),
    redis: Redis = Depends(get_redis),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> WebhookIngressGate:
    router = EventRouter(
        db,
        registry,
        resolver=build_resolver(db, settings.LEGACY_MIGRATION_ACTIVE),
        max_failures=settings.RENEWAL_MAX_FAILURES,
        remote_timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        currency=settings.DEFAULT_CURRENCY,
    )
    return WebhookIngressGate(
        router,
        registry,
        redis,
        lock_ttl_seconds=settings.WEBHOOK_LOCK_TTL_SECONDS,
        allow_unsigned=settings.allow_unsigned_webhooks,
    )
