"""
Структурированное логирование для DevFlow engine

Обеспечивает:
- Структурированные логи (JSON, console, logfmt)
- Контекст run: pipeline, run_id, stage, instance
- Маскирование чувствительных значений (env сервисов часто содержит секреты)
"""

import logging
import os
import sys
from typing import Any, Dict, Optional, TextIO, Union

import structlog
from structlog.stdlib import BoundLogger

from devflow_core.config.models import LogLevel


class LoggerConfig:
    """Конфигурация логгера"""

    def __init__(
        self,
        level: Union[str, LogLevel] = LogLevel.INFO,
        format: str = "json",  # json, console, text
        output: TextIO = sys.stdout,
        include_timestamp: bool = True,
        max_string_length: int = 2000,
        sanitize_keys: bool = True,
        log_file: Optional[str] = None,
    ):
        self.level = LogLevel(str(getattr(level, "value", level)).upper()).value
        self.format = format.lower()
        self.output = output
        self.include_timestamp = include_timestamp
        self.max_string_length = max_string_length
        self.sanitize_keys = sanitize_keys
        # Файл открывает и закрывает logging.FileHandler, output тогда не используется
        self.log_file = log_file

    @classmethod
    def from_env(cls) -> "LoggerConfig":
        """Настройки из переменных окружения DEVFLOW_LOG_*"""
        return cls(
            level=os.getenv("DEVFLOW_LOG_LEVEL", "INFO"),
            format=os.getenv("DEVFLOW_LOG_FORMAT", "json"),
            log_file=os.getenv("DEVFLOW_LOG_FILE") or None,
        )


SENSITIVE_KEYS = frozenset(
    {
        "password",
        "passwd",
        "secret",
        "token",
        "api_key",
        "private_key",
        "credentials",
        "authorization",
    }
)

REDACTED = "***REDACTED***"


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and any(s in key.lower() for s in SENSITIVE_KEYS)


def _sanitize(data: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = _sanitize(value)
        elif _is_sensitive(key):
            result[key] = REDACTED if value else value
        else:
            result[key] = value
    return result


def sanitize_sensitive_data(logger, method_name, event_dict):
    """Процессор для маскирования чувствительных данных"""
    return _sanitize(event_dict)


def make_truncator(max_length: int):
    """Процессор для обрезания длинных значений (например, вывода шагов)"""

    def truncate_value(value: Any) -> Any:
        if isinstance(value, str) and len(value) > max_length:
            return value[:max_length] + "... [TRUNCATED]"
        if isinstance(value, dict):
            return {k: truncate_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [truncate_value(item) for item in value]
        return value

    def truncate_long_values(logger, method_name, event_dict):
        return {k: truncate_value(v) for k, v in event_dict.items()}

    return truncate_long_values


def setup_logging(config: Optional[LoggerConfig] = None) -> None:
    """
    Настройка системы логирования

    Args:
        config: Конфигурация логгера, если None - из переменных окружения
    """
    if config is None:
        config = LoggerConfig.from_env()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]

    if config.include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))

    processors.append(structlog.processors.format_exc_info)

    if config.sanitize_keys:
        processors.append(sanitize_sensitive_data)

    processors.append(make_truncator(config.max_string_length))

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    elif config.format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:  # text
        processors.append(structlog.processors.LogfmtRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # force=True закрывает handlers предыдущей настройки
    if config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(config.output)

    logging.basicConfig(
        level=getattr(logging, config.level),
        handlers=[handler],
        format="%(message)s",
        force=True,
    )


def get_logger(name: Optional[str] = None, **initial_values) -> BoundLogger:
    """
    Получение логгера с начальным контекстом

    Args:
        name: Имя логгера
        **initial_values: Начальные значения контекста
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def configure_for_development() -> None:
    """Быстрая настройка для разработки"""
    setup_logging(LoggerConfig(level="DEBUG", format="console"))


def configure_for_cli(level: str = "WARNING") -> None:
    """Логи CLI идут в stderr, чтобы не смешиваться с отчетом"""
    setup_logging(LoggerConfig(level=level, format="console", output=sys.stderr))
