"""
Контроллер допуска.

Единственная инстанция, которая решает, можно ли принять заявку на
интервал. Проверка конфликтов и постановка записи в индекс выполняются
внутри транзакции ресурса, то есть под его эксклюзивной блокировкой.
"""

from typing import List, Optional

from shared_kernel import (
    ConcurrencyException,
    ConflictError,
    EntityId,
    Interval,
    ResourceId,
    overlaps,
    validate_interval,
)

from . import interfaces as ports
from .availability import AvailabilityIndex, IndexEntry
from .infrastructure import ResourceTransaction, StructlogLogger


class AdmissionController:
    """Доменный сервис допуска бронирований."""

    def __init__(
        self, index: AvailabilityIndex, logger: Optional[ports.ILogger] = None
    ):
        self._index = index
        self._logger = logger if logger is not None else StructlogLogger()

    def check(
        self,
        resource_id: ResourceId,
        interval: Interval,
        exclude_booking_id: Optional[EntityId] = None,
    ) -> List[IndexEntry]:
        """Возвращает конфликты без захвата блокировки.

        Результат носит справочный характер: к моменту фактического
        допуска состояние ресурса может измениться.
        """
        validate_interval(interval)
        return [
            entry
            for entry in self._index.find_overlapping(resource_id, interval)
            if entry.booking_id != exclude_booking_id
        ]

    def admit(
        self,
        transaction: ResourceTransaction,
        resource_id: ResourceId,
        interval: Interval,
        booking_id: EntityId,
        exclude_booking_id: Optional[EntityId] = None,
    ) -> IndexEntry:
        """Принимает интервал или отклоняет его с ConflictError.

        Args:
            transaction: Открытая транзакция того же ресурса
            resource_id: Идентификатор ресурса
            interval: Запрошенный интервал
            booking_id: Бронирование, для которого выполняется допуск
            exclude_booking_id: Бронирование, прежний интервал которого не
                считается конфликтом (перенос бронирования на себя)

        Returns:
            Запись индекса, которая будет применена при фиксации транзакции.
        """
        validate_interval(interval)
        if not transaction.is_open or transaction.resource_id != resource_id:
            raise ConcurrencyException(
                f"Допуск для ресурса {resource_id} возможен только "
                f"в его открытой транзакции"
            )

        ignored = set(transaction.staged_removals)
        if exclude_booking_id is not None:
            ignored.add(exclude_booking_id)

        conflicts = [
            entry
            for entry in self._index.find_overlapping(resource_id, interval)
            if entry.booking_id not in ignored
        ]
        conflicts.extend(
            entry
            for entry in transaction.staged_inserts
            if entry.booking_id not in ignored and overlaps(entry.interval, interval)
        )

        if conflicts:
            self._logger.info(
                "Admission rejected",
                resource_id=resource_id,
                interval=str(interval),
                conflicts=[str(entry.booking_id) for entry in conflicts],
            )
            raise ConflictError(
                resource_id,
                interval,
                [(entry.booking_id, entry.interval) for entry in conflicts],
            )

        if exclude_booking_id is not None and exclude_booking_id in self._index:
            transaction.stage_index_remove(exclude_booking_id)

        entry = IndexEntry(booking_id, resource_id, interval)
        transaction.stage_index_insert(entry)
        self._logger.debug(
            "Admission granted",
            resource_id=resource_id,
            booking_id=str(booking_id),
            interval=str(interval),
        )
        return entry

    def release(
        self, transaction: ResourceTransaction, booking_id: EntityId
    ) -> Optional[IndexEntry]:
        """Ставит на удаление запись бронирования из индекса."""
        entry = self._index.get(booking_id)
        if entry is None:
            return None
        if not transaction.is_open or transaction.resource_id != entry.resource_id:
            raise ConcurrencyException(
                f"Освобождение ресурса {entry.resource_id} возможно только "
                f"в его открытой транзакции"
            )
        transaction.stage_index_remove(booking_id)
        return entry
