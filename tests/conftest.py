"""Shared fixtures: in-memory backend, service and spot factory."""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# Ensure test env vars before any spotmerge imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("REDIS_URL", "cache+memory://")

from spotmerge.auth import SettingsModeratorPolicy  # noqa: E402
from spotmerge.core.geo import Coordinates  # noqa: E402
from spotmerge.schemas.spot import Spot  # noqa: E402
from spotmerge.service import SpotMergeService  # noqa: E402
from spotmerge.store.memory import InMemoryBackend  # noqa: E402

BASE_LAT = 45.75
BASE_LNG = 4.85
METRES_PER_DEGREE_LAT = 6_371_000.0 * 3.141592653589793 / 180.0
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

MODERATOR_ID = "mod"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


def north_of_base(metres: float) -> Coordinates:
    """Point `metres` due north of the base point (exact on the sphere)."""
    return Coordinates(BASE_LAT + metres / METRES_PER_DEGREE_LAT, BASE_LNG)


@pytest.fixture
def make_spot():
    counter = {"n": 0}

    def _make(spot_id: str, north_m: float | None = 0.0, **overrides: Any) -> Spot:
        counter["n"] += 1
        fields: dict[str, Any] = {
            "id": spot_id,
            "coordinates": north_of_base(north_m) if north_m is not None else None,
            "from_label": "Lyon",
            "to_label": "Paris",
            "created_at": BASE_TIME + timedelta(minutes=counter["n"]),
        }
        fields.update(overrides)
        return Spot(**fields)

    return _make


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def service(backend: InMemoryBackend, notifier: RecordingNotifier) -> SpotMergeService:
    return SpotMergeService(
        backend.unit_of_work,
        moderators=SettingsModeratorPolicy([MODERATOR_ID]),
        notifier=notifier,
    )
