"""
Celery application for the revenue ledger worker.

The API queues each settled account after commit; the worker appends it to
the Excel ledger. Start it with:

    celery -A tableside.celery_worker worker -Q ledger --loglevel=info
"""

from celery import Celery

from tableside.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "tableside",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["tableside.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_default_queue=settings.ledger_queue,
    result_expires=settings.task_result_ttl_seconds,

    # Ledger appends serialize on a file lock; more than one in flight only waits
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.ledger_worker_concurrency,

    # Appends are deduplicated by account id, so redelivery is harmless
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)
