"""
Общее ядро (Shared Kernel) системы бронирования переговорных.

Содержит общие типы данных и утилиты, используемые в различных ограниченных контекстах.
"""

from .domain import (
    BookingStatus,
    BusinessRuleValidationException,
    BusyError,
    ConcurrencyException,
    ConflictError,
    DomainEvent,
    # Исключения
    DomainException,
    # Базовые типы
    EntityId,
    # Интервалы
    Interval,
    InvalidIntervalError,
    NotFoundError,
    ResourceId,
    WILDCARD,
    booking_sort_key,
    generate_id,
    # Утилиты
    now,
    overlaps,
    today,
    validate_interval,
)

__all__ = [
    # Базовые типы
    "EntityId",
    "ResourceId",
    "WILDCARD",
    "generate_id",
    # Интервалы
    "Interval",
    "overlaps",
    "validate_interval",
    "booking_sort_key",
    "DomainEvent",
    # Перечисления
    "BookingStatus",
    # Исключения
    "DomainException",
    "ConcurrencyException",
    "BusinessRuleValidationException",
    "InvalidIntervalError",
    "NotFoundError",
    "ConflictError",
    "BusyError",
    # Утилиты
    "now",
    "today",
]
