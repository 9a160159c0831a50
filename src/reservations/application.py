"""
Прикладной слой контекста бронирования переговорных.

Содержит сервисы приложения, которые координируют
взаимодействие между внешними интерфейсами и доменной моделью.
"""

import asyncio
from datetime import date, datetime, timedelta, tzinfo
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field
from settings import EngineSettings
from shared_kernel import (
    BookingStatus,
    BusinessRuleValidationException,
    BusyError,
    DomainException,
    EntityId,
    Interval,
    ResourceId,
    booking_sort_key,
)

from . import interfaces as ports
from .admission import AdmissionController
from .availability import (
    AvailabilitySlot,
    day_window,
    is_fully_booked,
    project_slots,
    week_days,
)
from .domain import Booking
from .infrastructure import WILDCARD, StructlogLogger, Subscription

T = TypeVar("T")

# DTO (Data Transfer Objects) для входящих данных


class CreateReservationRequest(BaseModel):
    """Запрос на создание бронирования."""

    resource_id: ResourceId = Field(..., min_length=1)
    start: datetime
    end: datetime
    requested_by: str
    title: str = ""
    attendee_count: int = Field(1, gt=0)

    def interval(self) -> Interval:
        return Interval(start=self.start, end=self.end)


class RescheduleReservationRequest(BaseModel):
    """Запрос на перенос бронирования."""

    booking_id: EntityId
    start: datetime
    end: datetime

    def interval(self) -> Interval:
        return Interval(start=self.start, end=self.end)


class CancelReservationRequest(BaseModel):
    """Запрос на отмену бронирования."""

    booking_id: EntityId
    reason: Optional[str] = None


class UpdateReservationDetailsRequest(BaseModel):
    """Запрос на изменение названия или числа участников."""

    booking_id: EntityId
    title: Optional[str] = None
    attendee_count: Optional[int] = Field(None, gt=0)


# DTO для исходящих данных


class BookingDTO(BaseModel):
    """DTO для представления бронирования."""

    id: EntityId
    resource_id: ResourceId
    start: datetime
    end: datetime
    requested_by: str
    title: str
    attendee_count: int
    status: BookingStatus
    created_at: str
    updated_at: str
    version: int

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingDTO":
        """Создает DTO из доменной модели."""
        return cls(
            id=booking.id,
            resource_id=booking.resource_id,
            start=booking.interval.start,
            end=booking.interval.end,
            requested_by=booking.requested_by,
            title=booking.title,
            attendee_count=booking.attendee_count,
            status=booking.status,
            created_at=booking.created_at.isoformat(),
            updated_at=booking.updated_at.isoformat(),
            version=booking.version,
        )


class AvailabilitySlotDTO(BaseModel):
    """DTO для слота сетки доступности."""

    start: datetime
    end: datetime
    is_available: bool
    booking_id: Optional[EntityId] = None

    @classmethod
    def from_slot(cls, slot: AvailabilitySlot) -> "AvailabilitySlotDTO":
        return cls(
            start=slot.slot.start,
            end=slot.slot.end,
            is_available=slot.is_available,
            booking_id=slot.booking_id,
        )


class DayScheduleDTO(BaseModel):
    """Бронирования ресурса за один день недельного расписания."""

    day: date
    bookings: List[BookingDTO]


def _local_date(instant: datetime, tz: Optional[tzinfo]) -> date:
    if tz is not None and instant.tzinfo is not None:
        instant = instant.astimezone(tz)
    return instant.date()


# Сервисы приложения


class ReservationApplicationService:
    """Сервис приложения для работы с бронированиями.

    Все изменения ресурса проходят через его транзакцию: проверка
    интервала выполняется до захвата блокировки, допуск и фиксация -
    под ней. Ошибки логируются и пробрасываются вызывающей стороне.
    """

    def __init__(
        self,
        uow: ports.IReservationUnitOfWork,
        settings: Optional[EngineSettings] = None,
        logger: Optional[ports.ILogger] = None,
    ):
        """Инициализирует сервис."""
        self._uow = uow
        self._settings = settings if settings is not None else EngineSettings()
        self._logger = (
            logger if logger is not None else StructlogLogger("reservations.application")
        )
        self._admission = AdmissionController(uow.index, self._logger)

    @property
    def uow(self) -> ports.IReservationUnitOfWork:
        return self._uow

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    def _log_failure(self, operation: str, error: Exception, **context) -> None:
        self._logger.warning(
            f"{operation} failed",
            error_type=type(error).__name__,
            error=str(error),
            **context,
        )

    # Команды

    async def create_reservation(self, request: CreateReservationRequest) -> BookingDTO:
        """Создает бронирование; при успешном допуске оно сразу подтверждено."""
        interval = request.interval()

        try:
            async with self._uow.transaction(request.resource_id) as tx:
                confirmed = self._settings.auto_confirm
                booking = Booking.create(
                    resource_id=request.resource_id,
                    interval=interval,
                    requested_by=request.requested_by,
                    title=request.title,
                    attendee_count=request.attendee_count,
                    confirmed=confirmed,
                )
                if confirmed:
                    self._admission.admit(tx, request.resource_id, interval, booking.id)
                tx.save(booking)
        except DomainException as e:
            self._log_failure(
                "create_reservation",
                e,
                resource_id=request.resource_id,
                interval=str(interval),
            )
            raise

        self._logger.info(
            "Reservation created",
            booking_id=str(booking.id),
            resource_id=booking.resource_id,
            status=booking.status.value,
        )
        return BookingDTO.from_domain(booking)

    async def reschedule_reservation(
        self, request: RescheduleReservationRequest
    ) -> BookingDTO:
        """Переносит бронирование; при конфликте оно остается без изменений."""
        new_interval = request.interval()

        try:
            # Ресурс бронирования неизменен, поэтому его можно узнать до блокировки
            resource_id = self._uow.bookings.get_by_id(request.booking_id).resource_id
            async with self._uow.transaction(resource_id) as tx:
                booking = self._uow.bookings.get_by_id(request.booking_id)
                if booking.reschedule(new_interval):
                    if booking.is_confirmed:
                        self._admission.admit(
                            tx,
                            resource_id,
                            new_interval,
                            booking.id,
                            exclude_booking_id=booking.id,
                        )
                    tx.save(booking)
        except DomainException as e:
            self._log_failure(
                "reschedule_reservation",
                e,
                booking_id=str(request.booking_id),
                interval=str(new_interval),
            )
            raise

        self._logger.info(
            "Reservation rescheduled",
            booking_id=str(booking.id),
            interval=str(booking.interval),
        )
        return BookingDTO.from_domain(booking)

    async def cancel_reservation(self, request: CancelReservationRequest) -> BookingDTO:
        """Отменяет бронирование. Повторная отмена - успешная пустая операция."""
        try:
            booking = self._uow.bookings.get_by_id(request.booking_id)
            if booking.is_cancelled:
                return BookingDTO.from_domain(booking)

            async with self._uow.transaction(booking.resource_id) as tx:
                booking = self._uow.bookings.get_by_id(request.booking_id)
                if booking.cancel(request.reason):
                    self._admission.release(tx, booking.id)
                    tx.save(booking)
        except DomainException as e:
            self._log_failure(
                "cancel_reservation", e, booking_id=str(request.booking_id)
            )
            raise

        self._logger.info("Reservation cancelled", booking_id=str(booking.id))
        return BookingDTO.from_domain(booking)

    async def confirm_reservation(self, booking_id: EntityId) -> BookingDTO:
        """Подтверждает ожидающее бронирование, выполняя допуск его интервала."""
        try:
            resource_id = self._uow.bookings.get_by_id(booking_id).resource_id
            async with self._uow.transaction(resource_id) as tx:
                booking = self._uow.bookings.get_by_id(booking_id)
                if not booking.is_confirmed:
                    booking.confirm()
                    self._admission.admit(tx, resource_id, booking.interval, booking.id)
                    tx.save(booking)
        except DomainException as e:
            self._log_failure("confirm_reservation", e, booking_id=str(booking_id))
            raise

        return BookingDTO.from_domain(booking)

    async def update_details(
        self, request: UpdateReservationDetailsRequest
    ) -> BookingDTO:
        """Меняет название и/или число участников без повторного допуска."""
        try:
            resource_id = self._uow.bookings.get_by_id(request.booking_id).resource_id
            async with self._uow.transaction(resource_id) as tx:
                booking = self._uow.bookings.get_by_id(request.booking_id)
                if booking.update_details(
                    title=request.title, attendee_count=request.attendee_count
                ):
                    tx.save(booking)
        except DomainException as e:
            self._log_failure(
                "update_details", e, booking_id=str(request.booking_id)
            )
            raise

        return BookingDTO.from_domain(booking)

    async def purge_cancelled(self, booking_id: EntityId) -> None:
        """Физически удаляет отмененное бронирование (для сервиса хранения)."""
        try:
            resource_id = self._uow.bookings.get_by_id(booking_id).resource_id
            async with self._uow.transaction(resource_id) as tx:
                booking = self._uow.bookings.get_by_id(booking_id)
                if not booking.is_cancelled:
                    raise BusinessRuleValidationException(
                        "Удалять можно только отмененные бронирования"
                    )
                tx.delete(booking_id)
        except DomainException as e:
            self._log_failure("purge_cancelled", e, booking_id=str(booking_id))
            raise

        self._logger.info("Cancelled reservation purged", booking_id=str(booking_id))

    # Запросы

    def get_reservation(self, booking_id: EntityId) -> BookingDTO:
        """Возвращает информацию о бронировании."""
        return BookingDTO.from_domain(self._uow.bookings.get_by_id(booking_id))

    def query_availability(
        self,
        resource_id: ResourceId,
        window_start: datetime,
        window_end: datetime,
        slot_minutes: Optional[int] = None,
    ) -> List[AvailabilitySlotDTO]:
        """Возвращает сетку слотов окна с признаком доступности."""
        window = Interval(start=window_start, end=window_end)
        slot_length = (
            timedelta(minutes=slot_minutes)
            if slot_minutes is not None
            else self._settings.slot_length
        )
        slots = project_slots(self._uow.index, resource_id, window, slot_length)
        return [AvailabilitySlotDTO.from_slot(slot) for slot in slots]

    def day_availability(
        self, resource_id: ResourceId, day: date, tz: Optional[tzinfo] = None
    ) -> List[AvailabilitySlotDTO]:
        """Сетка рабочего дня (по умолчанию почасовая, 08:00-18:00)."""
        window = day_window(
            day, self._settings.day_start_hour, self._settings.day_end_hour, tz
        )
        return self.query_availability(resource_id, window.start, window.end)

    def is_fully_booked(
        self, resource_id: ResourceId, day: date, tz: Optional[tzinfo] = None
    ) -> bool:
        window = day_window(
            day, self._settings.day_start_hour, self._settings.day_end_hour, tz
        )
        slots = project_slots(
            self._uow.index, resource_id, window, self._settings.slot_length
        )
        return is_fully_booked(slots)

    def is_available(
        self, resource_id: ResourceId, start: datetime, end: datetime
    ) -> bool:
        """Справочная проверка без блокировки; окончательно решает допуск."""
        return not self._admission.check(resource_id, Interval(start=start, end=end))

    def available_resources(
        self, resource_ids: Sequence[ResourceId], at: datetime
    ) -> List[ResourceId]:
        """Ресурсы, свободные в указанный момент."""
        instant = Interval(start=at, end=at + timedelta(microseconds=1))
        return [
            resource_id
            for resource_id in resource_ids
            if not self._uow.index.find_overlapping(resource_id, instant)
        ]

    def list_resource_reservations(
        self, resource_id: ResourceId, include_cancelled: bool = False
    ) -> List[BookingDTO]:
        """Бронирования ресурса в порядке начала."""
        return [
            BookingDTO.from_domain(booking)
            for booking in self._uow.bookings.find_by_resource(resource_id)
            if include_cancelled or not booking.is_cancelled
        ]

    def list_day_reservations(
        self, day: date, tz: Optional[tzinfo] = None
    ) -> List[BookingDTO]:
        """Действующие бронирования всех ресурсов, начинающиеся в указанный день."""
        bookings = [
            booking
            for booking in self._uow.bookings.list_all()
            if not booking.is_cancelled
            and _local_date(booking.interval.start, tz) == day
        ]
        bookings.sort(key=lambda b: booking_sort_key(b.interval, b.id))
        return [BookingDTO.from_domain(booking) for booking in bookings]

    def upcoming_reservations(
        self,
        now: datetime,
        within: timedelta = timedelta(hours=3),
        limit: int = 5,
    ) -> List[BookingDTO]:
        """Ближайшие подтвержденные бронирования, начинающиеся в окне [now, now + within]."""
        horizon = now + within
        bookings = [
            booking
            for booking in self._uow.bookings.find_by_status(BookingStatus.CONFIRMED)
            if now <= booking.interval.start <= horizon
        ]
        bookings.sort(key=lambda b: booking_sort_key(b.interval, b.id))
        return [BookingDTO.from_domain(booking) for booking in bookings[:limit]]

    def week_schedule(
        self, resource_id: ResourceId, day: date, tz: Optional[tzinfo] = None
    ) -> List[DayScheduleDTO]:
        """Расписание ресурса на неделю (с понедельника), в которую попадает день."""
        bookings = self.list_resource_reservations(resource_id)
        return [
            DayScheduleDTO(
                day=week_day,
                bookings=[b for b in bookings if _local_date(b.start, tz) == week_day],
            )
            for week_day in week_days(day)
        ]

    # Подписки

    def subscribe(
        self,
        resource_id: ResourceId = WILDCARD,
        handler: Optional[ports.EventHandler] = None,
    ) -> Subscription:
        """Подписывает на изменения ресурса или всех ресурсов.

        История не воспроизводится: после подписки актуальное состояние
        нужно перечитать через запросы, а события использовать только как
        сигнал инвалидации.
        """
        return self._uow.event_bus.subscribe(resource_id, handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._uow.event_bus.unsubscribe(subscription)


class RetryingReservationClient:
    """Клиентская обертка над сервисом бронирования.

    Автоматически повторяет только BusyError и только ограниченное число
    раз, с экспоненциальной задержкой. Конфликты, ошибки валидации и
    отсутствие бронирования сразу возвращаются вызывающей стороне.
    """

    def __init__(
        self,
        service: ReservationApplicationService,
        attempts: int = 3,
        backoff_seconds: float = 0.05,
        logger: Optional[ports.ILogger] = None,
    ):
        self._service = service
        self._attempts = max(1, attempts)
        self._backoff_seconds = backoff_seconds
        self._logger = (
            logger if logger is not None else StructlogLogger("reservations.client")
        )

    @classmethod
    def from_settings(
        cls, service: ReservationApplicationService, settings: EngineSettings
    ) -> "RetryingReservationClient":
        return cls(
            service,
            attempts=settings.busy_retry_attempts,
            backoff_seconds=settings.busy_retry_backoff_seconds,
        )

    @property
    def service(self) -> ReservationApplicationService:
        return self._service

    async def _call(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        delay = self._backoff_seconds
        for attempt in range(1, self._attempts + 1):
            try:
                return await operation(*args)
            except BusyError as e:
                if attempt == self._attempts:
                    self._logger.error(
                        "Resource still busy, giving up",
                        resource_id=e.resource_id,
                        attempts=attempt,
                    )
                    raise
                self._logger.warning(
                    "Resource busy, retrying",
                    resource_id=e.resource_id,
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    async def create_reservation(self, request: CreateReservationRequest) -> BookingDTO:
        return await self._call(self._service.create_reservation, request)

    async def reschedule_reservation(
        self, request: RescheduleReservationRequest
    ) -> BookingDTO:
        return await self._call(self._service.reschedule_reservation, request)

    async def cancel_reservation(self, request: CancelReservationRequest) -> BookingDTO:
        return await self._call(self._service.cancel_reservation, request)

    async def confirm_reservation(self, booking_id: EntityId) -> BookingDTO:
        return await self._call(self._service.confirm_reservation, booking_id)

    async def update_details(
        self, request: UpdateReservationDetailsRequest
    ) -> BookingDTO:
        return await self._call(self._service.update_details, request)
