"""
Celery para tareas en segundo plano (bitácora de auditoría de caja)
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "caja",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.modules.cash.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Los eventos de auditoría son cortos; nada debe quedarse colgado
    task_time_limit=60,
    task_soft_time_limit=45,
    task_acks_late=True,
    worker_prefetch_multiplier=4,
    worker_max_tasks_per_child=1000,
    task_ignore_result=True,
    task_routes={
        "app.modules.cash.tasks.*": {"queue": "audit"},
    },
    broker_connection_retry_on_startup=True,
)

# En tests las tareas se ejecutan en el mismo proceso, sin broker
if settings.ENVIRONMENT == "test":
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=False)

if __name__ == "__main__":
    celery_app.start()
