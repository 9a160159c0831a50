"""
Интерфейсы (порты) для контекста бронирования переговорных.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Union,
)

from shared_kernel import BookingStatus, EntityId, ResourceId

from .domain import Booking, BookingEvent

if TYPE_CHECKING:
    from .availability import AvailabilityIndex
    from .infrastructure import ResourceTransaction, Subscription

EventHandler = Callable[[BookingEvent], Union[None, Awaitable[None]]]


class ILogger(Protocol):
    """Интерфейс для логгера."""

    def info(self, message: str, **kwargs: Any) -> None: ...
    def error(self, message: str, **kwargs: Any) -> None: ...
    def warning(self, message: str, **kwargs: Any) -> None: ...
    def debug(self, message: str, **kwargs: Any) -> None: ...


class IEventBus(Protocol):
    """Интерфейс для шины изменений.

    Со стороны писателя шина только дописывает события,
    со стороны подписчиков доступна только на чтение.
    """

    def publish(self, event: BookingEvent) -> BookingEvent: ...
    def subscribe(
        self, topic: ResourceId, handler: Optional[EventHandler] = None
    ) -> Subscription: ...
    def unsubscribe(self, subscription: Subscription) -> None: ...


class IBookingRepository(Protocol):
    """Интерфейс репозитория для бронирований (долговременное хранилище)."""

    def add(self, booking: Booking) -> None: ...
    def get_by_id(self, booking_id: EntityId) -> Booking: ...
    def find(self, booking_id: EntityId) -> Optional[Booking]: ...
    def update(self, booking: Booking) -> None: ...
    def remove(self, booking_id: EntityId) -> None: ...
    def find_by_resource(self, resource_id: ResourceId) -> List[Booking]: ...
    def find_by_status(self, status: BookingStatus) -> List[Booking]: ...
    def list_all(self) -> List[Booking]: ...


class IReservationUnitOfWork(Protocol):
    """Интерфейс Unit of Work для контекста бронирования."""

    @property
    def bookings(self) -> IBookingRepository: ...
    @property
    def index(self) -> AvailabilityIndex: ...
    @property
    def event_bus(self) -> IEventBus: ...

    def transaction(
        self, resource_id: ResourceId
    ) -> AsyncContextManager[ResourceTransaction]: ...
