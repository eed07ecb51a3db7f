"""
Celery application: broker and result backend from settings.
Tasks are in ledger_service.workers.tasks (detached usage debits).
"""
from celery import Celery
from celery.signals import worker_process_init

from ledger_service.core.config import settings
from ledger_service.core.logging import configure_logging

celery_app = Celery(
    "ledger_service",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "ledger_service.workers.tasks.metering",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=120,
    result_expires=86400,
)

celery_app.conf.task_routes = {
    "ledger_service.workers.tasks.metering.record_usage_debit": {"queue": "metering"},
}


@worker_process_init.connect
def _init_worker_process(**kwargs) -> None:
    """Each forked worker process gets its own logging setup and DB engine."""
    from ledger_service.workers.context import init_session_factory

    configure_logging()
    init_session_factory()
