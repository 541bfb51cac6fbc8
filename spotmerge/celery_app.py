"""Celery application: RabbitMQ broker, Redis result backend.

Runs the periodic duplicate sweep; notification events are published to the
UI layer's queue and consumed there.
"""
from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from kombu import Exchange, Queue

from spotmerge.config import settings
from spotmerge.logging_config import setup_logging

celery = Celery(
    "spotmerge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=["spotmerge.workers.duplicate_scan"],
)

# ── Serialisation ──
celery.conf.accept_content = ["json"]
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.timezone = "UTC"
celery.conf.enable_utc = True

# ── Reliability ──
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.task_reject_on_worker_lost = True

# ── Exchanges & Queues ──
default_exchange = Exchange("spotmerge", type="direct")

celery.conf.task_queues = (
    Queue("scan", default_exchange, routing_key="scan"),
    Queue(settings.NOTIFICATION_QUEUE, default_exchange, routing_key=settings.NOTIFICATION_QUEUE),
)

celery.conf.task_default_queue = "scan"
celery.conf.task_default_exchange = "spotmerge"
celery.conf.task_default_routing_key = "scan"

# ── Task routes ──
celery.conf.task_routes = {
    "spotmerge.workers.duplicate_scan.run_duplicate_scan": {"queue": "scan"},
    settings.NOTIFICATION_TASK_NAME: {"queue": settings.NOTIFICATION_QUEUE},
}

# ── Beat Schedule ──
celery.conf.beat_schedule = {
    "duplicate-scan": {
        "task": "spotmerge.workers.duplicate_scan.run_duplicate_scan",
        "schedule": float(settings.SCAN_INTERVAL_S),
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    # Connected receivers replace Celery's own logging setup.
    setup_logging()
