# packages/devflow-core/src/devflow_core/config/models.py

"""
Pydantic модели конфигурации engine

Включает:
- RunConfig: параметры одного run (concurrency, fail-fast, matrix cap)
- LogLevel: уровни логирования
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_MATRIX_CAP = 256
DEFAULT_CONCURRENCY_LIMIT = 4


class LogLevel(str, Enum):
    """Уровни логирования"""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RunConfig(BaseModel):
    """Runtime конфигурация одного запуска pipeline"""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    concurrency_limit: int = Field(
        default=DEFAULT_CONCURRENCY_LIMIT,
        ge=1,
        le=256,
        description="Размер worker pool внутри этапа",
    )
    fail_fast: bool = Field(
        default=True, description="Отменять оставшуюся работу при первой ошибке"
    )
    matrix_cap: int = Field(
        default=DEFAULT_MATRIX_CAP,
        ge=1,
        description="Максимальный размер декартова произведения осей job",
    )
    working_dir: str = Field(default=".", description="Рабочая директория шагов")

    @field_validator("working_dir")
    @classmethod
    def validate_working_dir(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("working_dir cannot be empty")
        return v.strip()


def merge_run_config(
    base: Optional[RunConfig], overrides: Dict[str, Any]
) -> RunConfig:
    """
    Слияние конфигурации с переопределениями

    Args:
        base: Базовая конфигурация (например, из YAML)
        overrides: Переопределения; значения None игнорируются

    Returns:
        Новый объект RunConfig
    """
    data = base.model_dump() if base else {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig(**data)
