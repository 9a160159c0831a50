"""
Модуль контекста бронирования переговорных (Reservations Context).

Отвечает за бронирование общих ресурсов на полуоткрытые интервалы, включая:
- Допуск интервала без пересечений с подтвержденными бронированиями
- Индекс занятости ресурсов и сетку доступности
- Жизненный цикл бронирования и рассылку изменений подписчикам
"""

from . import (
    admission,
    application,
    availability,
    domain,
    event_handlers,
    infrastructure,
    interfaces,
)

__all__ = [
    'admission',
    'application',
    'availability',
    'domain',
    'event_handlers',
    'infrastructure',
    'interfaces',
]
