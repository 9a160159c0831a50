"""
Конфигурация тестов для pytest.
Добавляет директорию исходников в PYTHONPATH и объявляет общие фикстуры.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Добавляем директорию исходников в PYTHONPATH
root_dir = str(Path(__file__).parent.parent / "src")
if root_dir not in sys.path:
    sys.path.insert(0, root_dir)

from reservations.application import ReservationApplicationService  # noqa: E402
from reservations.infrastructure import ReservationUnitOfWork  # noqa: E402
from settings import EngineSettings  # noqa: E402
from shared_kernel import Interval  # noqa: E402

ROOM = "room-101"
OTHER_ROOM = "room-202"


def at(hour: int, minute: int = 0, day: int = 16) -> datetime:
    """Момент времени 16 марта 2026 (понедельник), UTC."""
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def span(start_hour: float, end_hour: float, day: int = 16) -> Interval:
    """Интервал по дробным часам: span(10.5, 11.5) == [10:30, 11:30)."""
    return Interval(
        start=at(int(start_hour), int(round(start_hour % 1 * 60)), day),
        end=at(int(end_hour), int(round(end_hour % 1 * 60)), day),
    )


@pytest.fixture
def settings():
    return EngineSettings(
        lock_timeout_seconds=0.2,
        busy_retry_attempts=3,
        busy_retry_backoff_seconds=0.01,
    )


@pytest.fixture
def uow(settings):
    return ReservationUnitOfWork(lock_timeout=settings.lock_timeout_seconds)


@pytest.fixture
def service(uow, settings):
    return ReservationApplicationService(uow, settings=settings)
