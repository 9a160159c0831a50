from functools import partial
from typing import Any, Dict, Optional

from reservations.application import (
    ReservationApplicationService,
    RetryingReservationClient,
)
from reservations.availability import AvailabilityIndex
from reservations.event_handlers import ScheduleViewCache, on_booking_changed
from reservations.infrastructure import (
    WILDCARD,
    InMemoryBookingRepository,
    InMemoryEventBus,
    JsonFileBookingRepository,
    ReservationUnitOfWork,
    StructlogLogger,
)
from settings import EngineSettings, configure_logging


def bootstrap_app(
    settings: Optional[EngineSettings] = None, configure_logs: bool = True
) -> Dict[str, Any]:
    """Создает и настраивает все компоненты приложения."""
    settings = settings or EngineSettings.from_env()
    if configure_logs:
        configure_logging(settings)
    logger = StructlogLogger("reservations")

    # 1. Хранилище: JSON-файл, если указан путь, иначе память
    if settings.store_path is not None:
        bookings_repo = JsonFileBookingRepository(settings.store_path)
    else:
        bookings_repo = InMemoryBookingRepository()

    # 2. Unit of Work с индексом и шиной изменений
    uow = ReservationUnitOfWork(
        bookings_repo=bookings_repo,
        index=AvailabilityIndex(),
        event_bus=InMemoryEventBus(
            logger=logger.bind(component="bus"),
            handler_max_attempts=settings.handler_max_attempts,
        ),
        logger=logger,
        lock_timeout=settings.lock_timeout_seconds,
    )
    # Индекс - производные данные, восстанавливаем его из хранилища
    uow.rebuild_index()

    # 3. Сервисы
    reservation_service = ReservationApplicationService(
        uow, settings=settings, logger=logger.bind(component="application")
    )
    client = RetryingReservationClient.from_settings(reservation_service, settings)

    # 4. Подписываем обработчики на события всех ресурсов
    cache = ScheduleViewCache()
    handler = partial(on_booking_changed, cache=cache)
    subscription = uow.event_bus.subscribe(WILDCARD, handler)

    return {
        "settings": settings,
        "uow": uow,
        "reservation_service": reservation_service,
        "client": client,
        "schedule_cache": cache,
        "cache_subscription": subscription,
    }
