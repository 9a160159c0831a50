"""
Основные доменные типы и утилиты общего ядра.
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Общие типы идентификаторов
EntityId = UUID
ResourceId = str

# Тема подписки на все ресурсы; ресурс с таким идентификатором недопустим
WILDCARD: ResourceId = "*"


def generate_id() -> UUID:
    """Генерирует новый UUID."""
    return uuid4()


class Interval(BaseModel):
    """Полуоткрытый интервал времени [start, end).

    Интервал включает момент начала и не включает момент окончания,
    поэтому два интервала, у которых конец одного совпадает с началом
    другого, являются смежными, но не пересекаются.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_bounds(self) -> "Interval":
        validate_interval(self)
        return self

    @property
    def duration(self) -> timedelta:
        """Длительность интервала."""
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        """Проверяет, попадает ли момент времени в интервал."""
        return self.start <= instant < self.end

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self, other)

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def overlaps(a: Interval, b: Interval) -> bool:
    """Единственное каноническое правило пересечения интервалов.

    Интервалы пересекаются тогда и только тогда, когда каждый из них
    начинается строго раньше окончания другого. Совпадение часа начала
    само по себе конфликтом не считается.
    """
    return a.start < b.end and b.start < a.end


def validate_interval(interval: Interval) -> Interval:
    """Проверяет корректность интервала.

    Raises:
        InvalidIntervalError: если окончание не позже начала или если
            хотя бы одна граница задана без часового пояса.
    """
    start, end = interval.start, interval.end
    if start.utcoffset() is None or end.utcoffset() is None:
        raise InvalidIntervalError(
            "Границы интервала должны быть заданы с часовым поясом"
        )
    if end <= start:
        raise InvalidIntervalError(
            f"Окончание интервала ({end.isoformat()}) должно быть позже "
            f"начала ({start.isoformat()})"
        )
    return interval


def booking_sort_key(interval: Interval, booking_id: EntityId) -> Tuple[datetime, str]:
    """Ключ сортировки бронирований ресурса: по началу, затем по id."""
    return (interval.start, str(booking_id))


class DomainEvent(BaseModel):
    """Базовый класс для всех доменных событий."""

    event_id: UUID = Field(default_factory=uuid4)
    occurred_on: datetime = Field(default_factory=lambda: now())
    event_type: str = ""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @model_validator(mode="before")
    @classmethod
    def _default_event_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("event_type"):
            data = {**data, "event_type": cls.__name__}
        return data


# Общие перечисления
class BookingStatus(str, Enum):
    """Статусы бронирования."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# Общие исключения
class DomainException(Exception):
    """Базовое исключение для доменных ошибок."""

    pass


class ConcurrencyException(DomainException):
    """Исключение при нарушении правил конкурентного доступа."""

    pass


class BusinessRuleValidationException(DomainException):
    """Исключение при нарушении бизнес-правил."""

    pass


class InvalidIntervalError(DomainException):
    """Некорректный интервал: ошибка вызывающей стороны, не повторяется."""

    pass


class NotFoundError(DomainException):
    """Операция ссылается на несуществующее бронирование."""

    def __init__(self, booking_id: EntityId):
        self.booking_id = booking_id
        super().__init__(f"Бронирование {booking_id} не найдено")


class ConflictError(DomainException):
    """Запрошенный интервал пересекается с подтвержденными бронированиями.

    Несет идентификаторы и интервалы всех конфликтующих бронирований,
    чтобы вызывающая сторона могла предложить альтернативу.
    """

    def __init__(
        self,
        resource_id: ResourceId,
        requested: Interval,
        conflicts: List[Tuple[EntityId, Interval]],
    ):
        self.resource_id = resource_id
        self.requested = requested
        self.conflicts = list(conflicts)
        ids = ", ".join(str(booking_id) for booking_id in self.booking_ids)
        super().__init__(
            f"Ресурс {resource_id} уже занят на {requested}: конфликт с {ids}"
        )

    @property
    def booking_ids(self) -> List[EntityId]:
        return [booking_id for booking_id, _ in self.conflicts]


class BusyError(ConcurrencyException):
    """Не удалось вовремя войти в критическую секцию ресурса.

    Единственный класс ошибок, который безопасно повторять с задержкой.
    """

    def __init__(self, resource_id: ResourceId, timeout: Optional[float] = None):
        self.resource_id = resource_id
        self.timeout = timeout
        super().__init__(
            f"Ресурс {resource_id} занят другой операцией "
            f"(ожидание {timeout} с истекло)"
        )


# Общие утилиты
def now() -> datetime:
    """Возвращает текущую дату и время (UTC)."""
    return datetime.now(timezone.utc)


def today() -> date:
    """Возвращает текущую дату."""
    return date.today()
