"""
Настройки движка бронирования и конфигурация логирования.

Значения читаются из переменных окружения с префиксом ROOM_RESERVATION_
(например, ROOM_RESERVATION_LOCK_TIMEOUT_SECONDS=0.5), при наличии
файла .env он подгружается через python-dotenv.
"""

import logging
import logging.config
import os
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "ROOM_RESERVATION_"


class EngineSettings(BaseModel):
    """Настройки движка бронирования."""

    # Сколько ждать критическую секцию ресурса, прежде чем вернуть BusyError
    lock_timeout_seconds: float = Field(2.0, gt=0)
    # Сетка доступности
    slot_minutes: int = Field(60, gt=0)
    day_start_hour: int = Field(8, ge=0, le=24)
    day_end_hour: int = Field(18, ge=0, le=24)
    # Подтверждать бронирование сразу при успешном допуске
    auto_confirm: bool = True
    # Повторы клиентской обертки (только для BusyError)
    busy_retry_attempts: int = Field(3, ge=1)
    busy_retry_backoff_seconds: float = Field(0.05, ge=0)
    # Повторы доставки события упавшему обработчику
    handler_max_attempts: int = Field(3, ge=1)
    log_level: str = "INFO"
    log_json: bool = False
    # JSON-файл хранилища; без него данные живут только в памяти
    store_path: Optional[Path] = None

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Неизвестный уровень логирования: {v}")
        return level

    @model_validator(mode="after")
    def working_day_is_not_empty(self) -> "EngineSettings":
        if self.day_end_hour <= self.day_start_hour:
            raise ValueError("Рабочий день должен заканчиваться позже, чем начинается")
        return self

    @property
    def slot_length(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True
    ) -> "EngineSettings":
        """Собирает настройки из окружения."""
        if environ is None:
            if load_env_file:
                load_dotenv()
            environ = os.environ

        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw not in (None, ""):
                values[name] = raw
        return cls(**values)


def configure_logging(settings: EngineSettings) -> None:
    """Настраивает structlog поверх стандартного logging."""
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": renderer,
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structlog",
                    "level": settings.log_level,
                }
            },
            "root": {"handlers": ["console"], "level": "WARNING"},
            "loggers": {
                "reservations": {
                    "handlers": ["console"],
                    "level": settings.log_level,
                    "propagate": False,
                },
            },
        }
    )
