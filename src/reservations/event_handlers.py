"""
Обработчики событий изменения бронирований.

Кэш представлений расписания хранит результаты запросов и сбрасывает
их по событиям шины. Сами данные события не применяются: после сброса
представление заново читает актуальное состояние через запросы.
"""

from typing import Any, Callable, Dict, Hashable, Optional, Set, Tuple

from shared_kernel import ResourceId

from . import interfaces as ports
from .domain import BookingEvent
from .infrastructure import StructlogLogger

CacheKey = Tuple[Hashable, ...]

ALL_BOOKINGS_KEY: CacheKey = ("bookings",)
TODAY_BOOKINGS_KEY: CacheKey = ("bookings", "today")


def resource_bookings_key(resource_id: ResourceId) -> CacheKey:
    return ("bookings", "resource", resource_id)


class ScheduleViewCache:
    """Кэш запросов слоя представления с инвалидацией по ключам."""

    def __init__(self, logger: Optional[ports.ILogger] = None):
        self._values: Dict[CacheKey, Any] = {}
        self._last_sequence: Dict[ResourceId, int] = {}
        self._logger = (
            logger if logger is not None else StructlogLogger("reservations.cache")
        )
        self.invalidations = 0

    @property
    def logger(self) -> ports.ILogger:
        return self._logger

    def get_or_load(self, key: CacheKey, loader: Callable[[], Any]) -> Any:
        if key not in self._values:
            self._values[key] = loader()
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def invalidate(self, *keys: CacheKey) -> Set[CacheKey]:
        """Сбрасывает ключи; сброс отсутствующего ключа ничего не делает."""
        dropped = {key for key in keys if key in self._values}
        for key in dropped:
            del self._values[key]
        self.invalidations += 1
        return dropped

    def last_sequence(self, resource_id: ResourceId) -> int:
        return self._last_sequence.get(resource_id, 0)

    def observe(self, event: BookingEvent) -> bool:
        """Запоминает номер события; False для уже виденного (дубликат)."""
        if event.sequence and event.sequence <= self.last_sequence(event.resource_id):
            return False
        self._last_sequence[event.resource_id] = event.sequence
        return True


def on_booking_changed(event: BookingEvent, cache: ScheduleViewCache) -> None:
    """Обработчик любого изменения бронирования."""
    if not cache.observe(event):
        cache.logger.debug(
            "Duplicate event skipped",
            resource_id=event.resource_id,
            sequence=event.sequence,
        )
        return

    dropped = cache.invalidate(
        ALL_BOOKINGS_KEY,
        TODAY_BOOKINGS_KEY,
        resource_bookings_key(event.resource_id),
    )
    cache.logger.debug(
        "Schedule views invalidated",
        event_type=event.event_type,
        resource_id=event.resource_id,
        keys=[list(key) for key in dropped],
    )
