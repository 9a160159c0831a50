"""
Индекс доступности ресурсов.

Для каждого ресурса хранит упорядоченную по началу последовательность
интервалов подтвержденных бронирований и отвечает на вопрос
"что занято на ресурсе R в окне W". Сеточные представления дня и недели
строятся поверх индекса по запросу и источником истины не являются.
"""

from bisect import bisect_left
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import (
    Dict,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Tuple,
)

from pydantic import BaseModel
from shared_kernel import (
    BusinessRuleValidationException,
    EntityId,
    Interval,
    ResourceId,
    booking_sort_key,
    overlaps,
)

from .domain import Booking

SortKey = Tuple[datetime, str]


class IndexEntry(NamedTuple):
    """Запись индекса: дескриптор подтвержденного бронирования."""

    booking_id: EntityId
    resource_id: ResourceId
    interval: Interval

    @property
    def sort_key(self) -> SortKey:
        return booking_sort_key(self.interval, self.booking_id)

    @classmethod
    def from_booking(cls, booking: Booking) -> "IndexEntry":
        return cls(booking.id, booking.resource_id, booking.interval)


class OverlapQuery:
    """Ленивая, конечная и перезапускаемая выборка пересечений.

    Каждый новый проход заново обращается к индексу, поэтому отражает
    его текущее состояние.
    """

    def __init__(
        self, index: "AvailabilityIndex", resource_id: ResourceId, interval: Interval
    ):
        self._index = index
        self.resource_id = resource_id
        self.interval = interval

    def __iter__(self) -> Iterator[IndexEntry]:
        return self._index._scan(self.resource_id, self.interval)

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None

    def __repr__(self) -> str:
        return f"OverlapQuery(resource_id={self.resource_id!r}, interval={self.interval})"


class AvailabilityIndex:
    """Упорядоченный индекс подтвержденных интервалов по ресурсам.

    Пишет в индекс только жизненный цикл бронирования через контроллер
    допуска и транзакцию ресурса.
    """

    def __init__(self) -> None:
        self._entries: Dict[ResourceId, List[IndexEntry]] = {}
        self._keys: Dict[ResourceId, List[SortKey]] = {}
        self._by_booking: Dict[EntityId, IndexEntry] = {}

    def find_overlapping(
        self, resource_id: ResourceId, interval: Interval
    ) -> OverlapQuery:
        """Возвращает записи ресурса, пересекающиеся с интервалом."""
        return OverlapQuery(self, resource_id, interval)

    def _scan(self, resource_id: ResourceId, interval: Interval) -> Iterator[IndexEntry]:
        entries = self._entries.get(resource_id)
        if not entries:
            return
        keys = self._keys[resource_id]

        # Интервалы ресурса попарно не пересекаются, поэтому слева от точки
        # вставки пересечься с запросом может только непосредственный сосед.
        position = bisect_left(keys, (interval.start, ""))
        if position > 0 and overlaps(entries[position - 1].interval, interval):
            yield entries[position - 1]

        while position < len(entries):
            entry = entries[position]
            if entry.interval.start >= interval.end:
                break
            yield entry
            position += 1

    def insert(self, entry: IndexEntry) -> None:
        if entry.booking_id in self._by_booking:
            raise ValueError(f"Booking {entry.booking_id} is already indexed")

        keys = self._keys.setdefault(entry.resource_id, [])
        entries = self._entries.setdefault(entry.resource_id, [])
        position = bisect_left(keys, entry.sort_key)
        keys.insert(position, entry.sort_key)
        entries.insert(position, entry)
        self._by_booking[entry.booking_id] = entry

    def remove(self, booking_id: EntityId) -> Optional[IndexEntry]:
        entry = self._by_booking.pop(booking_id, None)
        if entry is None:
            return None

        keys = self._keys[entry.resource_id]
        entries = self._entries[entry.resource_id]
        position = bisect_left(keys, entry.sort_key)
        del keys[position]
        del entries[position]
        if not entries:
            del self._keys[entry.resource_id]
            del self._entries[entry.resource_id]
        return entry

    def get(self, booking_id: EntityId) -> Optional[IndexEntry]:
        return self._by_booking.get(booking_id)

    def entries(self, resource_id: ResourceId) -> List[IndexEntry]:
        """Все записи ресурса в порядке начала."""
        return list(self._entries.get(resource_id, []))

    def resources(self) -> List[ResourceId]:
        return list(self._entries)

    def __contains__(self, booking_id: object) -> bool:
        return booking_id in self._by_booking

    def __len__(self) -> int:
        return len(self._by_booking)

    def clear(self) -> None:
        self._entries.clear()
        self._keys.clear()
        self._by_booking.clear()

    def rebuild(self, bookings: Iterable[Booking]) -> int:
        """Перестраивает индекс по бронированиям из хранилища.

        Учитываются только подтвержденные бронирования. Возвращает
        количество проиндексированных записей.
        """
        self.clear()
        for booking in bookings:
            if not booking.is_confirmed:
                continue
            entry = IndexEntry.from_booking(booking)
            clash = next(iter(self.find_overlapping(entry.resource_id, entry.interval)), None)
            if clash is not None:
                raise BusinessRuleValidationException(
                    f"Хранилище содержит пересекающиеся подтвержденные бронирования "
                    f"{clash.booking_id} и {entry.booking_id}"
                )
            self.insert(entry)
        return len(self)


# Проекции: сетка слотов на день и неделю


class AvailabilitySlot(BaseModel):
    """Слот сетки с признаком доступности."""

    slot: Interval
    is_available: bool
    booking_id: Optional[EntityId] = None


def iter_slots(window: Interval, slot_length: timedelta) -> Iterator[Interval]:
    """Нарезает окно на слоты фиксированной длины; последний обрезается по окну."""
    if slot_length <= timedelta(0):
        raise ValueError("Длина слота должна быть положительной")

    cursor = window.start
    while cursor < window.end:
        slot_end = min(cursor + slot_length, window.end)
        yield Interval(start=cursor, end=slot_end)
        cursor = slot_end


def project_slots(
    index: AvailabilityIndex,
    resource_id: ResourceId,
    window: Interval,
    slot_length: timedelta = timedelta(hours=1),
) -> List[AvailabilitySlot]:
    """Строит сетку доступности ресурса в окне по данным индекса."""
    occupying = list(index.find_overlapping(resource_id, window))
    slots: List[AvailabilitySlot] = []
    cursor = 0

    for slot in iter_slots(window, slot_length):
        # Записи отсортированы и не пересекаются, значит их окончания тоже упорядочены
        while cursor < len(occupying) and occupying[cursor].interval.end <= slot.start:
            cursor += 1

        entry = None
        if cursor < len(occupying) and overlaps(occupying[cursor].interval, slot):
            entry = occupying[cursor]

        slots.append(
            AvailabilitySlot(
                slot=slot,
                is_available=entry is None,
                booking_id=entry.booking_id if entry is not None else None,
            )
        )

    return slots


def day_window(
    day: date,
    start_hour: int = 8,
    end_hour: int = 18,
    tz: Optional[tzinfo] = None,
) -> Interval:
    """Рабочее окно дня (по умолчанию 08:00-18:00, UTC)."""
    midnight = datetime.combine(day, time(0, 0), tzinfo=tz or timezone.utc)
    return Interval(
        start=midnight + timedelta(hours=start_hour),
        end=midnight + timedelta(hours=end_hour),
    )


def is_fully_booked(slots: List[AvailabilitySlot]) -> bool:
    """True, если в сетке нет ни одного свободного слота."""
    return bool(slots) and all(not slot.is_available for slot in slots)


def week_days(day: date) -> List[date]:
    """Дни недели (с понедельника), в которую попадает указанная дата."""
    monday = day - timedelta(days=day.weekday())
    return [monday + timedelta(days=offset) for offset in range(7)]
