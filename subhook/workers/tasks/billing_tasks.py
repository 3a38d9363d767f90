"""
Tarefas periodicas de billing (Celery Beat).

- renew_due_subscriptions: cobra assinaturas com next_billing_date vencida
- reconcile_subscriptions: alinha status local com o gateway
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subhook.core.config import settings
from subhook.core.database import utcnow
from subhook.core.exceptions import GatewayNotConfiguredError
from subhook.core.logging_config import log_context
from subhook.services.billing_engine import BillingEngine
from subhook.services.payment_gateway import GatewayRegistry, IntegrationType
from subhook.services.reconciliation_service import ReconciliationService
from subhook.services.subscription_state import SubscriptionStateMachine
from subhook.services.system_resolver import build_resolver
from subhook.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def run_renewal_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    registry: GatewayRegistry,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
    retry_after: timedelta = timedelta(hours=24),
) -> dict:
    try:
        gateway = registry.get(IntegrationType.SUBSCRIPTION)
    except GatewayNotConfiguredError:
        logger.warning("renew_due_subscriptions: gateway nao configurado, pulando.")
        return {"checked": 0, "renewed": 0, "failed": 0, "errors": 0}

    async with session_factory() as db:
        machine = SubscriptionStateMachine(
            db,
            gateway=gateway,
            remote_timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            max_failures=settings.RENEWAL_MAX_FAILURES,
        )
        engine = BillingEngine(
            db, machine=machine, gateway=gateway, currency=settings.DEFAULT_CURRENCY
        )
        results = await engine.renew_due(now=now or utcnow(), limit=limit, retry_after=retry_after)

    renewed = sum(1 for result in results if result.success)
    errors = sum(1 for result in results if result.subscription is None)
    summary = {
        "checked": len(results),
        "renewed": renewed,
        "failed": len(results) - renewed - errors,
        "errors": errors,
    }
    logger.info("renew_due_subscriptions: %s", summary)
    return summary


async def run_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    registry: GatewayRegistry,
    *,
    limit: int = 200,
) -> dict:
    try:
        gateway = registry.get(IntegrationType.SUBSCRIPTION)
    except GatewayNotConfiguredError:
        logger.warning("reconcile_subscriptions: gateway nao configurado, pulando.")
        return {"checked": 0}

    async with session_factory() as db:
        machine = SubscriptionStateMachine(
            db,
            gateway=gateway,
            max_failures=settings.RENEWAL_MAX_FAILURES,
        )
        resolver = build_resolver(db, settings.LEGACY_MIGRATION_ACTIVE)
        service = ReconciliationService(db, gateway, machine, resolver)
        results = await service.reconcile_open(limit=limit)

    summary = {"checked": len(results), **Counter(result.outcome for result in results)}
    logger.info("reconcile_subscriptions: %s", summary)
    return summary


async def _with_registry(job, **kwargs) -> dict:
    # Each task runs in its own asyncio.run loop; pooled connections are
    # bound to that loop and must be dropped before it closes.
    from subhook.core import database

    registry = GatewayRegistry.from_settings(settings)
    try:
        with log_context(job=job.__name__):
            return await job(database.AsyncSessionLocal, registry, **kwargs)
    finally:
        await registry.aclose()
        await database.engine.dispose()


@celery_app.task(name="subhook.workers.tasks.billing_tasks.renew_due_subscriptions")
def renew_due_subscriptions() -> dict:
    """Renova assinaturas vencidas em lote; falhas individuais nao param o lote."""
    return asyncio.run(
        _with_registry(
            run_renewal_sweep,
            limit=settings.RENEWAL_BATCH_SIZE,
            retry_after=timedelta(hours=settings.RENEWAL_RETRY_HOURS),
        )
    )


@celery_app.task(name="subhook.workers.tasks.billing_tasks.reconcile_subscriptions")
def reconcile_subscriptions() -> dict:
    return asyncio.run(
        _with_registry(run_reconciliation, limit=settings.RECONCILIATION_BATCH_SIZE)
    )
