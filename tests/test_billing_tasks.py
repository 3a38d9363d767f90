"""
Periodic billing task tests.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from subhook.core.exceptions import ServiceUnavailableError
from subhook.models.enums import SubscriptionStatus
from subhook.services.payment_gateway import GatewayRegistry
from subhook.workers import celery_app as celery_module
from subhook.workers.tasks import billing_tasks
from tests.conftest import NOW, make_plan, make_subscription


@pytest.mark.asyncio
async def test_renewal_sweep_counts_outcomes(db, session_factory, registry, gateway) -> None:
    plan = await make_plan(db)
    await make_subscription(db, plan, next_billing_date=NOW - timedelta(days=3))
    await make_subscription(db, plan, next_billing_date=NOW - timedelta(days=2))
    await make_subscription(db, plan, next_billing_date=NOW - timedelta(days=1))
    await make_subscription(db, plan, is_paused=True)
    await make_subscription(db, plan, next_billing_date=NOW + timedelta(days=5))
    gateway.charge_responses.extend(
        [
            {"status": "approved"},
            {"status": "rejected"},
            ServiceUnavailableError("down", operation="create_payment"),
        ]
    )

    summary = await billing_tasks.run_renewal_sweep(session_factory, registry, now=NOW)

    assert summary == {"checked": 3, "renewed": 1, "failed": 1, "errors": 1}
    assert len(gateway.charges) == 3


@pytest.mark.asyncio
async def test_renewal_sweep_respects_retry_window(db, session_factory, registry, gateway) -> None:
    plan = await make_plan(db)
    await make_subscription(db, plan, renewal_attempt_date=NOW - timedelta(hours=2))
    await make_subscription(db, plan, renewal_attempt_date=NOW - timedelta(hours=30))

    summary = await billing_tasks.run_renewal_sweep(
        session_factory, registry, now=NOW, retry_after=timedelta(hours=24)
    )

    assert summary["checked"] == 1


@pytest.mark.asyncio
async def test_reconciliation_summarizes_outcomes(db, session_factory, registry, gateway) -> None:
    plan = await make_plan(db)
    await make_subscription(db, plan, external_subscription_id="pre-a")
    await make_subscription(
        db, plan, status=SubscriptionStatus.PENDING.value, external_subscription_id="pre-b"
    )
    await make_subscription(db, plan, external_subscription_id="pre-gone")
    gateway.subscriptions["pre-a"] = {"id": "pre-a", "status": "authorized"}
    gateway.subscriptions["pre-b"] = {"id": "pre-b", "status": "authorized"}

    summary = await billing_tasks.run_reconciliation(session_factory, registry)

    assert summary == {"checked": 3, "unchanged": 1, "updated": 1, "error": 1}


@pytest.mark.asyncio
async def test_jobs_skip_without_gateway(session_factory) -> None:
    registry = GatewayRegistry({})

    assert await billing_tasks.run_renewal_sweep(session_factory, registry) == {
        "checked": 0,
        "renewed": 0,
        "failed": 0,
        "errors": 0,
    }
    assert await billing_tasks.run_reconciliation(session_factory, registry) == {"checked": 0}


@pytest.mark.asyncio
async def test_task_run_disposes_engine_even_when_job_fails(monkeypatch, session_factory) -> None:
    from subhook.core import database

    disposed = []

    class RecordingEngine:
        async def dispose(self) -> None:
            disposed.append(True)

    monkeypatch.setattr(database, "engine", RecordingEngine())
    monkeypatch.setattr(database, "AsyncSessionLocal", session_factory)
    factories = []

    async def job(factory, registry, **kwargs):
        factories.append(factory)
        return {"checked": 0}

    async def failing_job(factory, registry, **kwargs):
        raise ServiceUnavailableError("down", operation="create_payment")

    assert await billing_tasks._with_registry(job) == {"checked": 0}
    with pytest.raises(ServiceUnavailableError):
        await billing_tasks._with_registry(failing_job)

    assert factories == [session_factory]
    assert disposed == [True, True]


def test_celery_tasks_run_jobs_with_configured_batch_sizes(monkeypatch) -> None:
    calls = []

    async def fake_with_registry(job, **kwargs):
        calls.append((job, kwargs))
        return {"checked": 0}

    monkeypatch.setattr(billing_tasks, "_with_registry", fake_with_registry)

    assert billing_tasks.renew_due_subscriptions() == {"checked": 0}
    assert billing_tasks.reconcile_subscriptions() == {"checked": 0}
    assert calls[0][0] is billing_tasks.run_renewal_sweep
    assert calls[0][1]["retry_after"] == timedelta(hours=24)
    assert calls[1] == (billing_tasks.run_reconciliation, {"limit": 200})


def test_beat_schedule_registers_both_jobs() -> None:
    schedule = celery_module.celery_app.conf.beat_schedule

    assert schedule["renew-due-subscriptions"]["schedule"] == 15 * 60
    assert schedule["reconcile-subscriptions"]["task"].endswith("reconcile_subscriptions")
