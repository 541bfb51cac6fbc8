"""Service wiring shared by the API process and the Celery workers."""
from __future__ import annotations

import logging

from fastapi import Header, HTTPException, Request

from spotmerge.config import Settings, settings as default_settings
from spotmerge.notifications import CeleryNotifier, LoggingNotifier, Notifier
from spotmerge.schemas.merge import Identity
from spotmerge.service import SpotMergeService

logger = logging.getLogger(__name__)


def build_notifier(config: Settings) -> Notifier:
    if config.NOTIFICATION_BACKEND == "celery":
        from spotmerge.celery_app import celery

        return CeleryNotifier(celery, config.NOTIFICATION_TASK_NAME, config.NOTIFICATION_QUEUE)
    return LoggingNotifier()


def build_backend(config: Settings):
    if config.STORAGE_BACKEND == "memory":
        from spotmerge.store.memory import InMemoryBackend

        return InMemoryBackend()
    if config.STORAGE_BACKEND == "sql":
        from spotmerge.store.sql import SqlBackend

        return SqlBackend()
    raise ValueError(f"Unknown STORAGE_BACKEND {config.STORAGE_BACKEND!r}")


def build_service(config: Settings | None = None, *, backend=None, notifier: Notifier | None = None) -> SpotMergeService:
    config = config or default_settings
    backend = backend if backend is not None else build_backend(config)
    logger.info(
        "Spot merge service wired",
        extra={"storage": type(backend).__name__, "notifications": config.NOTIFICATION_BACKEND},
    )
    return SpotMergeService(
        backend.unit_of_work,
        notifier=notifier if notifier is not None else build_notifier(config),
        config=config,
    )


# ── FastAPI dependencies ──


def get_service(request: Request) -> SpotMergeService:
    return request.app.state.merge_service


def get_identity(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
) -> Identity:
    """Caller identity, asserted by the authenticating gateway in front of us."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return Identity(user_id=x_user_id, display_name=x_user_name or None)
