"""
Тесты сборки приложения и сквозного сценария с инвалидацией кэша.
"""

import uuid

from bootstrap import bootstrap_app
from conftest import ROOM, span
from reservations.application import (
    CancelReservationRequest,
    CreateReservationRequest,
)
from reservations.domain import BookingCreated
from reservations.event_handlers import (
    ALL_BOOKINGS_KEY,
    TODAY_BOOKINGS_KEY,
    ScheduleViewCache,
    on_booking_changed,
    resource_bookings_key,
)
from settings import EngineSettings
from shared_kernel import BookingStatus


def create_request(interval):
    return CreateReservationRequest(
        resource_id=ROOM, start=interval.start, end=interval.end, requested_by="user-1"
    )


class TestScheduleViewCache:
    """Тесты кэша представлений расписания."""

    def event(self, sequence):
        return BookingCreated(
            booking_id=uuid.uuid4(),
            resource_id=ROOM,
            interval=span(10, 11),
            status=BookingStatus.CONFIRMED,
            sequence=sequence,
        )

    def test_invalidates_related_views(self):
        cache = ScheduleViewCache()
        for key in (ALL_BOOKINGS_KEY, TODAY_BOOKINGS_KEY, resource_bookings_key(ROOM)):
            cache.get_or_load(key, list)
        cache.get_or_load(resource_bookings_key("room-202"), list)

        on_booking_changed(self.event(1), cache)

        assert ALL_BOOKINGS_KEY not in cache
        assert resource_bookings_key(ROOM) not in cache
        assert resource_bookings_key("room-202") in cache

    def test_duplicate_delivery_is_ignored(self):
        cache = ScheduleViewCache()
        on_booking_changed(self.event(1), cache)
        cache.get_or_load(ALL_BOOKINGS_KEY, list)

        on_booking_changed(self.event(1), cache)

        assert ALL_BOOKINGS_KEY in cache
        assert cache.invalidations == 1

    def test_invalidation_is_idempotent(self):
        cache = ScheduleViewCache()
        assert cache.invalidate(ALL_BOOKINGS_KEY) == set()
        assert cache.invalidate(ALL_BOOKINGS_KEY) == set()


class TestBootstrap:
    """Тесты композиции компонентов."""

    async def test_end_to_end_invalidation(self):
        app = bootstrap_app(EngineSettings(), configure_logs=False)
        service, cache = app["reservation_service"], app["schedule_cache"]
        loads = []

        def load_bookings():
            loads.append(1)
            return service.list_resource_reservations(ROOM)

        assert cache.get_or_load(resource_bookings_key(ROOM), load_bookings) == []

        booking = await app["client"].create_reservation(create_request(span(10, 11)))
        await app["uow"].event_bus.drain()

        reloaded = cache.get_or_load(resource_bookings_key(ROOM), load_bookings)
        assert [b.id for b in reloaded] == [booking.id]
        assert len(loads) == 2

        await service.cancel_reservation(CancelReservationRequest(booking_id=booking.id))
        await app["uow"].event_bus.drain()
        assert cache.last_sequence(ROOM) == 2

        await app["uow"].event_bus.close()
        assert not app["cache_subscription"].active

    async def test_json_store_is_reloaded(self, tmp_path):
        settings = EngineSettings(store_path=tmp_path / "bookings.json")

        first = bootstrap_app(settings, configure_logs=False)
        booking = await first["client"].create_reservation(create_request(span(10, 11)))
        await first["uow"].event_bus.close()

        second = bootstrap_app(settings, configure_logs=False)
        assert booking.id in second["uow"].index
        assert not second["reservation_service"].is_available(
            ROOM, span(10.5, 11).start, span(10.5, 11).end
        )
