"""
Инфраструктурный слой контекста бронирования переговорных.

Содержит реализации репозиториев, шины изменений, блокировок ресурсов
и единицы работы, зависимые от конкретных технологий.
"""

import asyncio
import inspect
import json
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog
from shared_kernel import (
    WILDCARD,
    BookingStatus,
    BusyError,
    ConcurrencyException,
    EntityId,
    NotFoundError,
    ResourceId,
    booking_sort_key,
    generate_id,
)

from . import interfaces as ports
from .availability import AvailabilityIndex, IndexEntry
from .domain import Booking, BookingEvent


class StructlogLogger(ports.ILogger):
    """Реализация логгера поверх structlog.

    Ключ "event" в structlog занят под текст сообщения,
    поэтому полезную нагрузку событий передаем под другими именами.
    """

    def __init__(self, name: str = "reservations", **context: Any):
        self._name = name
        self._logger = structlog.get_logger(name).bind(**context)

    def bind(self, **context: Any) -> "StructlogLogger":
        bound = StructlogLogger(self._name)
        bound._logger = self._logger.bind(**context)
        return bound

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(message, **kwargs)


# Репозитории


class InMemoryBookingRepository(ports.IBookingRepository):
    """Реализация репозитория бронирований в памяти.

    Хранит и отдает копии, чтобы незафиксированные изменения рабочих
    экземпляров не попадали в хранилище в обход транзакции.
    """

    def __init__(self) -> None:
        self._bookings: Dict[EntityId, Booking] = {}

    def get_by_id(self, booking_id: EntityId) -> Booking:
        if booking_id not in self._bookings:
            raise NotFoundError(booking_id)
        return self._bookings[booking_id].model_copy(deep=True)

    def find(self, booking_id: EntityId) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking is not None else None

    def add(self, booking: Booking) -> None:
        if booking.id in self._bookings:
            raise ValueError(f"Booking with id {booking.id} already exists")
        self._bookings[booking.id] = booking.model_copy(deep=True)

    def update(self, booking: Booking) -> None:
        if booking.id not in self._bookings:
            raise NotFoundError(booking.id)
        self._bookings[booking.id] = booking.model_copy(deep=True)

    def remove(self, booking_id: EntityId) -> None:
        if booking_id not in self._bookings:
            raise NotFoundError(booking_id)
        del self._bookings[booking_id]

    def find_by_resource(self, resource_id: ResourceId) -> List[Booking]:
        bookings = [
            booking.model_copy(deep=True)
            for booking in self._bookings.values()
            if booking.resource_id == resource_id
        ]
        return sorted(bookings, key=lambda b: booking_sort_key(b.interval, b.id))

    def find_by_status(self, status: BookingStatus) -> List[Booking]:
        return [
            booking.model_copy(deep=True)
            for booking in self._bookings.values()
            if booking.status == status
        ]

    def list_all(self) -> List[Booking]:
        return [booking.model_copy(deep=True) for booking in self._bookings.values()]


class JsonFileBookingRepository(InMemoryBookingRepository):
    """Репозиторий бронирований, сохраняющий данные в JSON-файл."""

    def __init__(self, file_path: Union[str, Path]):
        """
        Инициализирует репозиторий.

        Args:
            file_path: Путь к JSON-файлу с данными
        """
        super().__init__()
        self._file_path = Path(file_path)
        self._load_data()

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _load_data(self) -> None:
        """Загружает данные из JSON-файла."""
        if not self._file_path.exists():
            return

        raw_data = self._file_path.read_text(encoding="utf-8")
        if not raw_data.strip():
            return

        for item in json.loads(raw_data):
            booking = Booking.model_validate(item)
            self._bookings[booking.id] = booking

    def _save_data(self) -> None:
        """Сохраняет данные в JSON-файл."""
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        data = [booking.model_dump(mode="json") for booking in self._bookings.values()]

        tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(self._file_path)

    def add(self, booking: Booking) -> None:
        super().add(booking)
        self._save_data()

    def update(self, booking: Booking) -> None:
        super().update(booking)
        self._save_data()

    def remove(self, booking_id: EntityId) -> None:
        super().remove(booking_id)
        self._save_data()


# Шина изменений

_CLOSED = object()


class Subscription:
    """Подписка на поток событий одного ресурса или всех ресурсов сразу.

    Без обработчика подписка читается как асинхронный поток
    (`async for event in subscription` или `await subscription.get()`).
    С обработчиком события доставляет фоновая задача, повторяя вызов
    упавшего обработчика до `max_attempts` раз.
    """

    def __init__(
        self,
        bus: "InMemoryEventBus",
        topic: ResourceId,
        handler: Optional[ports.EventHandler] = None,
        max_attempts: int = 3,
        logger: Optional[ports.ILogger] = None,
    ):
        self.id: EntityId = generate_id()
        self.topic = topic
        self._bus = bus
        self._handler = handler
        self._max_attempts = max(1, max_attempts)
        self._logger = logger if logger is not None else StructlogLogger()
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._pump_task: Optional["asyncio.Task[None]"] = None
        self.delivered = 0
        self.failed = 0

    @property
    def active(self) -> bool:
        return not self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def matches(self, event: BookingEvent) -> bool:
        return self.topic == WILDCARD or self.topic == event.resource_id

    def unsubscribe(self) -> None:
        """Отписывается от шины. Повторный вызов ничего не делает."""
        self._bus.unsubscribe(self)

    async def get(self, timeout: Optional[float] = None) -> Optional[BookingEvent]:
        """Ждет следующее событие; возвращает None, если подписка закрыта."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        self._queue.task_done()

        if item is _CLOSED:
            # Оставляем маркер для следующих читателей
            self._queue.put_nowait(_CLOSED)
            return None
        self.delivered += 1
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BookingEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def join(self) -> None:
        """Ждет, пока все уже поставленные события будут обработаны."""
        if self._closed:
            return
        await self._queue.join()

    async def wait_closed(self) -> None:
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)

    def _offer(self, event: BookingEvent) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        if self._handler is not None and self._pump_task is None:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queue.put_nowait(_CLOSED)

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _CLOSED:
                    return
                await self._deliver(item)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: BookingEvent) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
                return
            except Exception as e:
                self._logger.warning(
                    "Event handler failed",
                    subscription_id=str(self.id),
                    event_type=event.event_type,
                    booking_id=str(event.booking_id),
                    attempt=attempt,
                    error=str(e),
                )
        self.failed += 1
        self._logger.error(
            "Event handler gave up",
            subscription_id=str(self.id),
            event_type=event.event_type,
            booking_id=str(event.booking_id),
            attempts=self._max_attempts,
        )


class InMemoryEventBus(ports.IEventBus):
    """Реализация шины изменений в памяти.

    Гарантия доставки - "как минимум один раз", порядок сохраняется
    в пределах ресурса. История при подписке не воспроизводится.
    """

    def __init__(
        self, logger: Optional[ports.ILogger] = None, handler_max_attempts: int = 3
    ):
        self._logger = logger if logger is not None else StructlogLogger()
        self._handler_max_attempts = handler_max_attempts
        self._subscriptions: Dict[ResourceId, List[Subscription]] = {}
        self._sequences: Dict[ResourceId, int] = {}

    def publish(self, event: BookingEvent) -> BookingEvent:
        """Публикует событие и возвращает его копию с проставленным номером."""
        sequence = self._sequences.get(event.resource_id, 0) + 1
        self._sequences[event.resource_id] = sequence
        event = event.model_copy(update={"sequence": sequence})

        # Снимок списка: отписка во время доставки безопасна
        targets = tuple(
            dict.fromkeys(
                self._subscriptions.get(event.resource_id, [])
                + self._subscriptions.get(WILDCARD, [])
            )
        )
        if not targets:
            self._logger.debug(
                "No subscribers for event",
                event_type=event.event_type,
                resource_id=event.resource_id,
            )
            return event

        self._logger.info(
            f"Publishing event: {event.event_type}",
            payload=event.model_dump(mode="json"),
            subscribers=len(targets),
        )
        for subscription in targets:
            subscription._offer(event)
        return event

    def subscribe(
        self, topic: ResourceId, handler: Optional[ports.EventHandler] = None
    ) -> Subscription:
        """Подписывает на события ресурса или на общий поток (WILDCARD)."""
        subscription = Subscription(
            self,
            topic,
            handler=handler,
            max_attempts=self._handler_max_attempts,
            logger=self._logger,
        )
        self._subscriptions.setdefault(topic, []).append(subscription)
        self._logger.debug(
            "Subscribed", topic=topic, subscription_id=str(subscription.id)
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscriptions[subscription.topic]
            self._logger.debug(
                "Unsubscribed",
                topic=subscription.topic,
                subscription_id=str(subscription.id),
            )
        subscription._close()

    def subscriptions(self, topic: Optional[ResourceId] = None) -> List[Subscription]:
        if topic is not None:
            return list(self._subscriptions.get(topic, []))
        return [s for subs in self._subscriptions.values() for s in subs]

    def last_sequence(self, resource_id: ResourceId) -> int:
        return self._sequences.get(resource_id, 0)

    async def drain(self) -> None:
        """Ждет доставки всех опубликованных событий."""
        await asyncio.gather(*(s.join() for s in self.subscriptions()))

    async def close(self) -> None:
        """Закрывает все подписки и дожидается фоновых доставок."""
        subscriptions = self.subscriptions()
        for subscription in subscriptions:
            self.unsubscribe(subscription)
        await asyncio.gather(*(s.wait_closed() for s in subscriptions))


# Блокировки и единица работы


class ResourceLockRegistry:
    """Реестр блокировок: одна asyncio.Lock на ресурс.

    Операции над разными ресурсами друг друга не ждут.
    """

    def __init__(self) -> None:
        self._locks: Dict[ResourceId, asyncio.Lock] = {}

    def lock_for(self, resource_id: ResourceId) -> asyncio.Lock:
        if resource_id not in self._locks:
            self._locks[resource_id] = asyncio.Lock()
        return self._locks[resource_id]

    def is_locked(self, resource_id: ResourceId) -> bool:
        lock = self._locks.get(resource_id)
        return lock is not None and lock.locked()

    async def acquire(
        self, resource_id: ResourceId, timeout: Optional[float]
    ) -> asyncio.Lock:
        """Захватывает блокировку ресурса за ограниченное время.

        Raises:
            BusyError: если блокировку не удалось получить за timeout секунд.
        """
        lock = self.lock_for(resource_id)
        # Очередь ожидающих бывает и у незанятой блокировки
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise BusyError(resource_id, timeout) from None
        return lock


class ResourceTransaction:
    """Транзакция над одним ресурсом в его критической секции.

    Все изменения (записи в хранилище, операции с индексом, события)
    только накапливаются и применяются синхронно в commit(). Отмена или
    исключение до фиксации отбрасывают их целиком.
    """

    def __init__(self, uow: "ReservationUnitOfWork", resource_id: ResourceId):
        self.resource_id = resource_id
        self._uow = uow
        self._lock: Optional[asyncio.Lock] = None
        self._bookings: Dict[EntityId, Booking] = {}
        self._deletions: List[EntityId] = []
        self._index_ops: List[Tuple[str, Any]] = []
        self._state = "new"

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    @property
    def state(self) -> str:
        return self._state

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise ConcurrencyException(
                f"Транзакция ресурса {self.resource_id} не открыта (состояние {self._state})"
            )

    def _ensure_resource(self, resource_id: ResourceId) -> None:
        if resource_id != self.resource_id:
            raise ConcurrencyException(
                f"Транзакция ресурса {self.resource_id} не может изменять ресурс {resource_id}"
            )

    def save(self, booking: Booking) -> None:
        """Ставит бронирование на сохранение (добавление или обновление)."""
        self._ensure_open()
        self._ensure_resource(booking.resource_id)
        self._bookings[booking.id] = booking

    def delete(self, booking_id: EntityId) -> None:
        """Ставит бронирование на физическое удаление из хранилища."""
        self._ensure_open()
        self._deletions.append(booking_id)

    def stage_index_insert(self, entry: IndexEntry) -> None:
        self._ensure_open()
        self._ensure_resource(entry.resource_id)
        self._index_ops.append(("insert", entry))

    def stage_index_remove(self, booking_id: EntityId) -> None:
        self._ensure_open()
        self._index_ops.append(("remove", booking_id))

    @property
    def staged_inserts(self) -> List[IndexEntry]:
        removed = self.staged_removals
        return [
            op[1]
            for op in self._index_ops
            if op[0] == "insert" and op[1].booking_id not in removed
        ]

    @property
    def staged_removals(self) -> Set[EntityId]:
        return {op[1] for op in self._index_ops if op[0] == "remove"}

    async def __aenter__(self) -> "ResourceTransaction":
        if self._state != "new":
            raise ConcurrencyException("Транзакцию нельзя открыть повторно")
        self._lock = await self._uow.locks.acquire(
            self.resource_id, self._uow.lock_timeout
        )
        self._state = "open"
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if self.is_open:
                if exc_type is None:
                    self.commit()
                else:
                    self.rollback()
        finally:
            if self._lock is not None:
                self._lock.release()
                self._lock = None
        return False  # Пробрасываем исключение дальше, если оно было

    def commit(self) -> None:
        """Фиксирует все изменения и публикует события в порядке фиксации."""
        self._ensure_open()
        repo = self._uow.bookings
        index = self._uow.index
        undo: List[Callable[[], Any]] = []
        events: List[BookingEvent] = []

        try:
            for booking in self._bookings.values():
                events.extend(booking.pull_domain_events())
                previous = repo.find(booking.id)
                if previous is None:
                    repo.add(booking)
                    undo.append(partial(repo.remove, booking.id))
                else:
                    repo.update(booking)
                    undo.append(partial(repo.update, previous))

            for booking_id in self._deletions:
                previous = repo.get_by_id(booking_id)
                repo.remove(booking_id)
                undo.append(partial(repo.add, previous))

            for op, payload in self._index_ops:
                if op == "insert":
                    index.insert(payload)
                    undo.append(partial(index.remove, payload.booking_id))
                else:
                    removed = index.remove(payload)
                    if removed is not None:
                        undo.append(partial(index.insert, removed))
        except Exception as e:
            for action in reversed(undo):
                action()
            self._state = "rolled_back"
            self._uow.logger.error(
                "Transaction commit failed, changes undone",
                resource_id=self.resource_id,
                error=str(e),
            )
            raise

        self._state = "committed"
        self._uow.logger.debug(
            "Transaction committed",
            resource_id=self.resource_id,
            bookings=len(self._bookings),
            index_ops=len(self._index_ops),
        )
        # Публикуем, пока критическая секция ресурса еще удерживается
        for event in events:
            self._uow.event_bus.publish(event)

    def rollback(self) -> None:
        """Отбрасывает все накопленные изменения."""
        if self._state in ("committed", "rolled_back"):
            return
        self._bookings.clear()
        self._deletions.clear()
        self._index_ops.clear()
        self._state = "rolled_back"
        self._uow.logger.warning(
            "Transaction rolled back", resource_id=self.resource_id
        )


class ReservationUnitOfWork(ports.IReservationUnitOfWork):
    """Единица работы для контекста бронирования."""

    def __init__(
        self,
        bookings_repo: Optional[ports.IBookingRepository] = None,
        index: Optional[AvailabilityIndex] = None,
        event_bus: Optional[ports.IEventBus] = None,
        locks: Optional[ResourceLockRegistry] = None,
        logger: Optional[ports.ILogger] = None,
        lock_timeout: Optional[float] = 2.0,
    ):
        self._logger = logger if logger is not None else StructlogLogger()
        self._bookings = (
            bookings_repo if bookings_repo is not None else InMemoryBookingRepository()
        )
        self._index = index if index is not None else AvailabilityIndex()
        self._event_bus = (
            event_bus if event_bus is not None else InMemoryEventBus(logger=self._logger)
        )
        self._locks = locks if locks is not None else ResourceLockRegistry()
        self.lock_timeout = lock_timeout

    @property
    def bookings(self) -> ports.IBookingRepository:
        return self._bookings

    @property
    def index(self) -> AvailabilityIndex:
        return self._index

    @property
    def event_bus(self) -> ports.IEventBus:
        return self._event_bus

    @property
    def locks(self) -> ResourceLockRegistry:
        return self._locks

    @property
    def logger(self) -> ports.ILogger:
        return self._logger

    def transaction(self, resource_id: ResourceId) -> ResourceTransaction:
        """Открывает транзакцию в критической секции ресурса (через async with)."""
        return ResourceTransaction(self, resource_id)

    def rebuild_index(self) -> int:
        """Восстанавливает индекс доступности из хранилища."""
        count = self._index.rebuild(self._bookings.list_all())
        self._logger.info("Availability index rebuilt", entries=count)
        return count
