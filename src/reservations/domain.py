"""
Доменная модель контекста бронирования переговорных.

Содержит агрегат бронирования с его жизненным циклом
и доменные события, которые он порождает.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from shared_kernel import (
    WILDCARD,
    BookingStatus,
    BusinessRuleValidationException,
    DomainEvent,
    EntityId,
    Interval,
    ResourceId,
    generate_id,
    now,
)


class EventKind(str, Enum):
    """Виды изменений, о которых узнают подписчики."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class BookingEvent(DomainEvent):
    """Базовое событие изменения бронирования.

    Поле sequence проставляет шина при публикации: это порядковый номер
    события в пределах ресурса, по нему подписчик может отбросить дубликаты.
    События неизменяемы, все подписчики получают один и тот же поток.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    booking_id: EntityId
    resource_id: ResourceId
    sequence: int = 0


class BookingCreated(BookingEvent):
    """Событие создания бронирования."""

    kind: EventKind = EventKind.CREATED
    interval: Interval
    status: BookingStatus


class BookingUpdated(BookingEvent):
    """Событие изменения бронирования (перенос, подтверждение, детали)."""

    kind: EventKind = EventKind.UPDATED
    interval: Interval
    status: BookingStatus
    previous_interval: Optional[Interval] = None


class BookingCancelled(BookingEvent):
    """Событие отмены бронирования."""

    kind: EventKind = EventKind.CANCELLED
    reason: Optional[str] = None


class Booking(BaseModel):
    """Бронирование ресурса (переговорной) на полуоткрытый интервал."""

    id: EntityId = Field(default_factory=generate_id, frozen=True)
    resource_id: ResourceId = Field(..., min_length=1, frozen=True)
    interval: Interval
    requested_by: str  # Непрозрачный токен провайдера идентификации
    title: str = ""
    attendee_count: int = Field(1, gt=0)
    status: BookingStatus = BookingStatus.PENDING
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)
    version: int = 0
    _domain_events: List[DomainEvent] = PrivateAttr(default_factory=list)

    @field_validator("resource_id")
    @classmethod
    def _not_wildcard(cls, v: ResourceId) -> ResourceId:
        if v == WILDCARD:
            raise BusinessRuleValidationException(
                f"Идентификатор ресурса \"{WILDCARD}\" зарезервирован за подпиской на все ресурсы"
            )
        return v

    @property
    def domain_events(self) -> List[DomainEvent]:
        """Возвращает список доменных событий."""
        return self._domain_events

    def pull_domain_events(self) -> List[DomainEvent]:
        """Извлекает события и очищает список."""
        events = list(self._domain_events)
        self._domain_events.clear()
        return events

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED

    def _touch(self) -> None:
        self.updated_at = now()
        self.version += 1

    @classmethod
    def create(
        cls,
        resource_id: ResourceId,
        interval: Interval,
        requested_by: str,
        title: str = "",
        attendee_count: int = 1,
        confirmed: bool = True,
    ) -> "Booking":
        """Создает новое бронирование.

        Подтвержденным бронирование можно создавать только после того,
        как контроллер допуска принял его интервал.
        """
        booking = cls(
            resource_id=resource_id,
            interval=interval,
            requested_by=requested_by,
            title=title,
            attendee_count=attendee_count,
            status=BookingStatus.CONFIRMED if confirmed else BookingStatus.PENDING,
        )
        booking._domain_events.append(
            BookingCreated(
                booking_id=booking.id,
                resource_id=booking.resource_id,
                interval=booking.interval,
                status=booking.status,
            )
        )
        return booking

    def confirm(self) -> None:
        """Подтверждает ожидающее бронирование."""
        if self.status != BookingStatus.PENDING:
            raise BusinessRuleValidationException(
                f"Невозможно подтвердить бронирование в статусе {self.status.value}"
            )

        self.status = BookingStatus.CONFIRMED
        self._touch()
        self._domain_events.append(
            BookingUpdated(
                booking_id=self.id,
                resource_id=self.resource_id,
                interval=self.interval,
                status=self.status,
            )
        )

    def reschedule(self, new_interval: Interval) -> bool:
        """Переносит бронирование на новый интервал.

        Возвращает False, если интервал не изменился.
        """
        if self.is_cancelled:
            raise BusinessRuleValidationException(
                "Невозможно перенести отмененное бронирование"
            )
        if new_interval == self.interval:
            return False

        previous = self.interval
        self.interval = new_interval
        self._touch()
        self._domain_events.append(
            BookingUpdated(
                booking_id=self.id,
                resource_id=self.resource_id,
                interval=self.interval,
                status=self.status,
                previous_interval=previous,
            )
        )
        return True

    def update_details(
        self, title: Optional[str] = None, attendee_count: Optional[int] = None
    ) -> bool:
        """Меняет непрозрачные данные бронирования (название, число участников)."""
        if self.is_cancelled:
            raise BusinessRuleValidationException(
                "Невозможно изменить отмененное бронирование"
            )
        if attendee_count is not None and attendee_count <= 0:
            raise BusinessRuleValidationException(
                "Число участников должно быть положительным"
            )

        changed = False
        if title is not None and title != self.title:
            self.title = title
            changed = True
        if attendee_count is not None and attendee_count != self.attendee_count:
            self.attendee_count = attendee_count
            changed = True

        if changed:
            self._touch()
            self._domain_events.append(
                BookingUpdated(
                    booking_id=self.id,
                    resource_id=self.resource_id,
                    interval=self.interval,
                    status=self.status,
                )
            )
        return changed

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Отменяет бронирование.

        Повторная отмена ничего не меняет и не порождает событий.
        Возвращает True, если статус действительно изменился.
        """
        if self.is_cancelled:
            return False

        self.status = BookingStatus.CANCELLED
        self._touch()
        self._domain_events.append(
            BookingCancelled(
                booking_id=self.id, resource_id=self.resource_id, reason=reason
            )
        )
        return True
