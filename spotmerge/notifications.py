"""Fire-and-forget notifications towards the UI layer.

Nothing returned by a notifier is consumed by the merge core, and a
delivery failure never fails the operation that triggered it.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

from spotmerge.config import settings
from spotmerge.metrics import NOTIFICATION_FAILURES_TOTAL

logger = logging.getLogger(__name__)

PROPOSAL_CREATED = "MERGE_PROPOSAL_CREATED"
VOTE_RECORDED = "MERGE_VOTE_RECORDED"
PROPOSAL_APPROVED = "MERGE_PROPOSAL_APPROVED"
PROPOSAL_REJECTED = "MERGE_PROPOSAL_REJECTED"
PROPOSAL_CANCELLED = "MERGE_PROPOSAL_CANCELLED"
MERGE_EXECUTED = "SPOT_MERGE_EXECUTED"


class Notifier(Protocol):
    def notify(self, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s", event_type, extra={"event_type": event_type, "payload": payload})


class CeleryNotifier:
    """Hands events to the UI layer's notification task."""

    def __init__(self, celery_app, task_name: str | None = None, queue: str | None = None) -> None:
        self._celery = celery_app
        self._task_name = task_name or settings.NOTIFICATION_TASK_NAME
        self._queue = queue or settings.NOTIFICATION_QUEUE

    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        self._celery.send_task(self._task_name, args=[event_type, payload], queue=self._queue)


def safe_notify(notifier: Notifier | None, event_type: str, payload: dict[str, Any]) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(event_type, payload)
    except Exception:
        NOTIFICATION_FAILURES_TOTAL.labels(event_type=event_type).inc()
        logger.exception("Notification %s could not be handed over", event_type)
