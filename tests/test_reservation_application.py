"""
Тесты прикладного сервиса бронирования.

Проверяют допуск без пересечений, жизненный цикл бронирования,
поведение при конкурентных запросах и запросы доступности.
"""

import asyncio
import uuid
from datetime import date, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import OTHER_ROOM, ROOM, at, span
from reservations.application import (
    BookingDTO,
    CancelReservationRequest,
    CreateReservationRequest,
    RescheduleReservationRequest,
    ReservationApplicationService,
    RetryingReservationClient,
    UpdateReservationDetailsRequest,
)
from reservations.domain import BookingCancelled, BookingCreated, BookingUpdated
from settings import EngineSettings
from shared_kernel import (
    WILDCARD,
    BookingStatus,
    BusinessRuleValidationException,
    BusyError,
    ConflictError,
    InvalidIntervalError,
    NotFoundError,
)


def create_request(interval, resource_id=ROOM, **kwargs):
    return CreateReservationRequest(
        resource_id=resource_id,
        start=interval.start,
        end=interval.end,
        requested_by=kwargs.pop("requested_by", "user-1"),
        **kwargs,
    )


def reschedule_request(booking_id, interval):
    return RescheduleReservationRequest(
        booking_id=booking_id, start=interval.start, end=interval.end
    )


def assert_no_overlaps(uow, resource_id=ROOM):
    entries = uow.index.entries(resource_id)
    for previous, current in zip(entries, entries[1:]):
        assert previous.interval.end <= current.interval.start


class TestCreateReservation:
    """Тесты создания бронирования."""

    async def test_create_confirms_and_indexes(self, service, uow):
        booking = await service.create_reservation(
            create_request(span(10, 11), title="Планерка", attendee_count=5)
        )

        assert isinstance(booking, BookingDTO)
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.title == "Планерка"
        assert uow.bookings.get_by_id(booking.id).is_confirmed
        assert booking.id in uow.index

    async def test_adjacent_bookings_are_admitted(self, service, uow):
        await service.create_reservation(create_request(span(10, 11)))
        await service.create_reservation(create_request(span(11, 12)))

        assert len(uow.index.entries(ROOM)) == 2
        assert_no_overlaps(uow)

    async def test_overlap_is_rejected_with_existing_booking(self, service, uow):
        existing = await service.create_reservation(create_request(span(10, 11)))

        with pytest.raises(ConflictError) as exc_info:
            await service.create_reservation(create_request(span(10.5, 11.5)))

        assert exc_info.value.booking_ids == [existing.id]
        assert len(uow.bookings.list_all()) == 1
        assert len(uow.index) == 1

    async def test_identical_interval_is_rejected(self, service):
        await service.create_reservation(create_request(span(10, 11)))
        with pytest.raises(ConflictError):
            await service.create_reservation(create_request(span(10, 11)))

    async def test_same_interval_on_other_resource_is_admitted(self, service, uow):
        await service.create_reservation(create_request(span(10, 11)))
        await service.create_reservation(create_request(span(10, 11), OTHER_ROOM))
        assert len(uow.index) == 2

    async def test_invalid_interval_is_rejected_before_locking(self, service, uow):
        lock = uow.locks.lock_for(ROOM)
        await lock.acquire()
        try:
            with pytest.raises(InvalidIntervalError):
                await service.create_reservation(
                    CreateReservationRequest(
                        resource_id=ROOM, start=at(11), end=at(10), requested_by="user-1"
                    )
                )
        finally:
            lock.release()

    async def test_wildcard_resource_cannot_be_booked(self, service, uow):
        subscription = service.subscribe(WILDCARD)

        with pytest.raises(BusinessRuleValidationException):
            await service.create_reservation(create_request(span(10, 11), WILDCARD))

        assert uow.bookings.list_all() == []
        assert len(uow.index) == 0
        assert subscription.pending == 0
        assert not uow.locks.is_locked(WILDCARD)

    async def test_naive_time_is_rejected_next_to_aware_bookings(self, service, uow):
        existing = await service.create_reservation(create_request(span(10, 11)))
        naive_start = at(12).replace(tzinfo=None)
        naive_end = at(13).replace(tzinfo=None)

        with pytest.raises(InvalidIntervalError):
            await service.create_reservation(
                CreateReservationRequest(
                    resource_id=ROOM, start=naive_start, end=naive_end, requested_by="user-2"
                )
            )
        with pytest.raises(InvalidIntervalError):
            service.is_available(ROOM, naive_start, naive_end)
        with pytest.raises(InvalidIntervalError):
            service.available_resources([ROOM], naive_start)
        with pytest.raises(InvalidIntervalError):
            service.query_availability(ROOM, naive_start, naive_end)

        assert [e.booking_id for e in uow.index.entries(ROOM)] == [existing.id]
        assert not uow.locks.is_locked(ROOM)

    async def test_day_grid_defaults_to_utc(self, service):
        booking = await service.create_reservation(create_request(span(9, 10)))
        slots = service.day_availability(ROOM, date(2026, 3, 16))
        assert slots[0].start == at(8)
        assert slots[1].booking_id == booking.id

    async def test_pending_when_auto_confirm_is_off(self, uow):
        service = ReservationApplicationService(
            uow, settings=EngineSettings(auto_confirm=False)
        )
        first = await service.create_reservation(create_request(span(10, 11)))
        second = await service.create_reservation(create_request(span(10, 11)))

        assert first.status == BookingStatus.PENDING
        assert len(uow.index) == 0

        confirmed = await service.confirm_reservation(first.id)
        assert confirmed.status == BookingStatus.CONFIRMED
        assert first.id in uow.index

        with pytest.raises(ConflictError):
            await service.confirm_reservation(second.id)
        assert uow.bookings.get_by_id(second.id).status == BookingStatus.PENDING


class TestConcurrentAdmission:
    """Тесты конкурентных запросов на один слот."""

    async def test_exactly_one_of_concurrent_overlapping_creates_wins(
        self, service, uow
    ):
        intervals = [span(10, 11), span(10.25, 11.25), span(10.5, 11.5), span(10.75, 11.75)]
        requests = [
            create_request(interval, requested_by=f"user-{n}")
            for n, interval in enumerate(intervals * 3)
        ]

        # Держим блокировку, чтобы все запросы встали в очередь к ресурсу
        lock = uow.locks.lock_for(ROOM)
        await lock.acquire()
        tasks = [asyncio.create_task(service.create_reservation(r)) for r in requests]
        await asyncio.sleep(0)
        lock.release()

        results = await asyncio.gather(*tasks, return_exceptions=True)

        winners = [r for r in results if isinstance(r, BookingDTO)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == len(requests) - 1
        assert all(loser.booking_ids == [winners[0].id] for loser in losers)
        assert len(uow.index) == 1

    async def test_concurrent_adjacent_creates_all_succeed(self, service, uow):
        requests = [create_request(span(h, h + 1)) for h in range(8, 18)]
        results = await asyncio.gather(*(service.create_reservation(r) for r in requests))

        assert len(results) == 10
        assert len(uow.index.entries(ROOM)) == 10
        assert_no_overlaps(uow)

    async def test_held_lock_raises_busy(self, service, uow):
        lock = uow.locks.lock_for(ROOM)
        await lock.acquire()
        try:
            with pytest.raises(BusyError) as exc_info:
                await service.create_reservation(create_request(span(10, 11)))
            assert exc_info.value.resource_id == ROOM

            # Другие ресурсы не ждут
            other = await service.create_reservation(
                create_request(span(10, 11), OTHER_ROOM)
            )
            assert other.status == BookingStatus.CONFIRMED
        finally:
            lock.release()

        assert uow.index.entries(ROOM) == []

    async def test_cancelled_in_flight_create_leaves_no_trace(self, service, uow):
        subscription = service.subscribe(ROOM)
        lock = uow.locks.lock_for(ROOM)
        await lock.acquire()

        task = asyncio.create_task(service.create_reservation(create_request(span(10, 11))))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        lock.release()

        assert len(uow.index) == 0
        assert uow.bookings.list_all() == []
        assert subscription.pending == 0
        assert not uow.locks.is_locked(ROOM)

        # Ресурс остается доступным для следующих запросов
        booking = await service.create_reservation(create_request(span(10, 11)))
        assert booking.id in uow.index


class TestRescheduleReservation:
    """Тесты переноса бронирования."""

    async def test_reschedule_onto_own_interval(self, service, uow):
        booking = await service.create_reservation(create_request(span(10, 11)))

        moved = await service.reschedule_reservation(
            reschedule_request(booking.id, span(10.5, 11.5))
        )

        assert moved.start == at(10, 30)
        assert moved.version == booking.version + 1
        assert uow.index.entries(ROOM) == [uow.index.get(booking.id)]
        assert uow.index.get(booking.id).interval == span(10.5, 11.5)

    async def test_reschedule_conflict_keeps_booking_unchanged(self, service, uow):
        booking = await service.create_reservation(create_request(span(10, 11)))
        blocker = await service.create_reservation(create_request(span(12, 13)))

        with pytest.raises(ConflictError) as exc_info:
            await service.reschedule_reservation(
                reschedule_request(booking.id, span(12.5, 13.5))
            )

        assert exc_info.value.booking_ids == [blocker.id]
        assert service.get_reservation(booking.id) == booking
        assert uow.index.get(booking.id).interval == span(10, 11)

    async def test_reschedule_frees_previous_slot(self, service):
        booking = await service.create_reservation(create_request(span(10, 11)))
        await service.reschedule_reservation(reschedule_request(booking.id, span(14, 15)))

        assert service.is_available(ROOM, at(10), at(11))
        assert not service.is_available(ROOM, at(14), at(15))

    async def test_reschedule_unknown_booking(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            missing = uuid.uuid4()
            await service.reschedule_reservation(reschedule_request(missing, span(10, 11)))
        assert exc_info.value.booking_id == missing

    async def test_reschedule_cancelled_booking(self, service):
        booking = await service.create_reservation(create_request(span(10, 11)))
        await service.cancel_reservation(CancelReservationRequest(booking_id=booking.id))

        with pytest.raises(BusinessRuleValidationException):
            await service.reschedule_reservation(reschedule_request(booking.id, span(12, 13)))


class TestCancelReservation:
    """Тесты отмены бронирования."""

    async def test_cancel_frees_slot(self, service, uow):
        booking = await service.create_reservation(create_request(span(10, 11)))

        cancelled = await service.cancel_reservation(
            CancelReservationRequest(booking_id=booking.id, reason="Не нужна")
        )

        assert cancelled.status == BookingStatus.CANCELLED
        assert booking.id not in uow.index
        again = await service.create_reservation(create_request(span(10, 11)))
        assert again.status == BookingStatus.CONFIRMED

    async def test_cancel_twice_is_silent_success(self, service):
        booking = await service.create_reservation(create_request(span(10, 11)))
        subscription = service.subscribe(ROOM)
        request = CancelReservationRequest(booking_id=booking.id)

        first = await service.cancel_reservation(request)
        second = await service.cancel_reservation(request)

        assert first == second
        assert second.status == BookingStatus.CANCELLED
        event = await subscription.get(timeout=1)
        assert isinstance(event, BookingCancelled)
        assert subscription.pending == 0

    async def test_cancel_unknown_booking(self, service):
        with pytest.raises(NotFoundError):
            await service.cancel_reservation(
                CancelReservationRequest(booking_id=uuid.uuid4())
            )

    async def test_purge_only_cancelled(self, service, uow):
        booking = await service.create_reservation(create_request(span(10, 11)))
        with pytest.raises(BusinessRuleValidationException):
            await service.purge_cancelled(booking.id)

        await service.cancel_reservation(CancelReservationRequest(booking_id=booking.id))
        await service.purge_cancelled(booking.id)

        with pytest.raises(NotFoundError):
            service.get_reservation(booking.id)


class TestUpdateDetails:
    """Тесты изменения деталей бронирования."""

    async def test_update_details_keeps_interval(self, service, uow):
        booking = await service.create_reservation(create_request(span(10, 11)))

        updated = await service.update_details(
            UpdateReservationDetailsRequest(
                booking_id=booking.id, title="Демо", attendee_count=8
            )
        )

        assert updated.title == "Демо"
        assert updated.attendee_count == 8
        assert updated.start == booking.start
        assert uow.index.get(booking.id).interval == span(10, 11)


class TestEvents:
    """Тесты событий, публикуемых при фиксации."""

    async def test_lifecycle_events_in_order(self, service):
        subscription = service.subscribe(ROOM)

        booking = await service.create_reservation(create_request(span(10, 11)))
        await service.reschedule_reservation(reschedule_request(booking.id, span(12, 13)))
        await service.cancel_reservation(CancelReservationRequest(booking_id=booking.id))

        events = [await subscription.get(timeout=1) for _ in range(3)]
        assert [type(e) for e in events] == [BookingCreated, BookingUpdated, BookingCancelled]
        assert [e.sequence for e in events] == [1, 2, 3]
        assert events[1].previous_interval == span(10, 11)
        assert all(e.booking_id == booking.id for e in events)

    async def test_failed_admission_publishes_nothing(self, service):
        await service.create_reservation(create_request(span(10, 11)))
        subscription = service.subscribe(ROOM)

        with pytest.raises(ConflictError):
            await service.create_reservation(create_request(span(10, 11)))

        assert subscription.pending == 0

    async def test_unsubscribe(self, service):
        subscription = service.subscribe(ROOM)
        service.unsubscribe(subscription)

        await service.create_reservation(create_request(span(10, 11)))
        assert await subscription.get(timeout=1) is None


class TestQueries:
    """Тесты запросов доступности и списков бронирований."""

    async def test_created_booking_is_visible_in_availability(self, service):
        booking = await service.create_reservation(create_request(span(10, 11)))

        slots = service.query_availability(ROOM, at(9), at(12))

        assert [s.is_available for s in slots] == [True, False, True]
        assert slots[1].booking_id == booking.id
        assert slots[1].start == at(10)

    async def test_custom_slot_length(self, service):
        await service.create_reservation(create_request(span(10, 10.5)))
        slots = service.query_availability(ROOM, at(10), at(11), slot_minutes=15)
        assert [s.is_available for s in slots] == [False, False, True, True]

    async def test_day_availability_and_fully_booked(self, service):
        day = date(2026, 3, 16)
        slots = service.day_availability(ROOM, day, tz=timezone.utc)
        assert len(slots) == 10
        assert slots[0].start == at(8)
        assert not service.is_fully_booked(ROOM, day, tz=timezone.utc)

        await service.create_reservation(create_request(span(8, 18)))
        assert service.is_fully_booked(ROOM, day, tz=timezone.utc)

    async def test_available_resources(self, service):
        await service.create_reservation(create_request(span(10, 11)))
        rooms = [ROOM, OTHER_ROOM]

        assert service.available_resources(rooms, at(10, 30)) == [OTHER_ROOM]
        assert service.available_resources(rooms, at(11)) == rooms

    async def test_list_resource_reservations(self, service):
        late = await service.create_reservation(create_request(span(15, 16)))
        early = await service.create_reservation(create_request(span(9, 10)))
        await service.create_reservation(create_request(span(9, 10), OTHER_ROOM))
        await service.cancel_reservation(CancelReservationRequest(booking_id=late.id))

        assert [b.id for b in service.list_resource_reservations(ROOM)] == [early.id]
        assert [
            b.id for b in service.list_resource_reservations(ROOM, include_cancelled=True)
        ] == [early.id, late.id]

    async def test_list_day_reservations(self, service):
        today = await service.create_reservation(create_request(span(9, 10)))
        other = await service.create_reservation(create_request(span(8, 9), OTHER_ROOM))
        await service.create_reservation(create_request(span(9, 10, day=17)))

        listed = service.list_day_reservations(date(2026, 3, 16), tz=timezone.utc)

        assert [b.id for b in listed] == [other.id, today.id]

    async def test_upcoming_reservations(self, service):
        soon = await service.create_reservation(create_request(span(10, 11)))
        later = await service.create_reservation(create_request(span(11.5, 12), OTHER_ROOM))
        await service.create_reservation(create_request(span(13, 14)))
        await service.create_reservation(create_request(span(8, 9)))

        upcoming = service.upcoming_reservations(at(9, 30))
        assert [b.id for b in upcoming] == [soon.id, later.id]

        assert len(service.upcoming_reservations(at(9, 30), limit=1)) == 1
        assert service.upcoming_reservations(at(9, 30), within=timedelta(minutes=10)) == []

    async def test_week_schedule(self, service):
        monday = await service.create_reservation(create_request(span(9, 10)))
        thursday = await service.create_reservation(create_request(span(9, 10, day=19)))

        week = service.week_schedule(ROOM, date(2026, 3, 18), tz=timezone.utc)

        assert [d.day for d in week][0] == date(2026, 3, 16)
        assert [b.id for b in week[0].bookings] == [monday.id]
        assert [b.id for b in week[3].bookings] == [thursday.id]
        assert all(d.bookings == [] for d in week[4:])


class TestRetryingReservationClient:
    """Тесты клиентской обертки с повтором BusyError."""

    @pytest.fixture
    def fake_service(self):
        return MagicMock(spec=ReservationApplicationService)

    async def test_retries_busy_until_success(self, fake_service):
        expected = object()
        fake_service.create_reservation = AsyncMock(
            side_effect=[BusyError(ROOM, 0.1), BusyError(ROOM, 0.1), expected]
        )
        client = RetryingReservationClient(fake_service, attempts=3, backoff_seconds=0)

        result = await client.create_reservation(create_request(span(10, 11)))

        assert result is expected
        assert fake_service.create_reservation.await_count == 3

    async def test_gives_up_after_attempts(self, fake_service):
        fake_service.cancel_reservation = AsyncMock(side_effect=BusyError(ROOM, 0.1))
        client = RetryingReservationClient(fake_service, attempts=2, backoff_seconds=0)

        with pytest.raises(BusyError):
            await client.cancel_reservation(CancelReservationRequest(booking_id=uuid.uuid4()))
        assert fake_service.cancel_reservation.await_count == 2

    async def test_conflict_is_not_retried(self, fake_service):
        fake_service.reschedule_reservation = AsyncMock(
            side_effect=ConflictError(ROOM, span(10, 11), [])
        )
        client = RetryingReservationClient(fake_service, attempts=5, backoff_seconds=0)

        with pytest.raises(ConflictError):
            await client.reschedule_reservation(
                reschedule_request(uuid.uuid4(), span(10, 11))
            )
        assert fake_service.reschedule_reservation.await_count == 1

    async def test_real_lock_contention_is_retried(self, uow, settings):
        service = ReservationApplicationService(uow, settings=settings)
        client = RetryingReservationClient(service, attempts=3, backoff_seconds=0.25)
        lock = uow.locks.lock_for(ROOM)
        await lock.acquire()
        asyncio.get_running_loop().call_later(0.3, lock.release)

        booking = await client.create_reservation(create_request(span(10, 11)))

        assert booking.status == BookingStatus.CONFIRMED
