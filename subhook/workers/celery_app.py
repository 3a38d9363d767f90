"""
Celery application factory.

Configura broker, backend, serialização, limites e beat schedule.
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from subhook.core.config import settings
from subhook.core.logging_config import setup_logging

celery_app = Celery("subhook")

celery_app.conf.update(
    # Broker / Backend
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    # Serialização
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Reliability
    broker_connection_retry_on_startup=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Limites
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    result_expires=3600,
    beat_schedule_filename="/tmp/celerybeat-schedule",
)

celery_app.conf.include = [
    "subhook.workers.tasks.billing_tasks",
]

# Models precisam estar registrados antes de qualquer task rodar
import subhook.models  # noqa: F401, E402

celery_app.conf.beat_schedule = {
    "renew-due-subscriptions": {
        "task": "subhook.workers.tasks.billing_tasks.renew_due_subscriptions",
        "schedule": settings.RENEWAL_SWEEP_MINUTES * 60,
    },
    "reconcile-subscriptions": {
        "task": "subhook.workers.tasks.billing_tasks.reconcile_subscriptions",
        "schedule": settings.RECONCILIATION_HOURS * 3600,
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Worker usa o mesmo formato (com contexto de billing) da API."""
    setup_logging()
