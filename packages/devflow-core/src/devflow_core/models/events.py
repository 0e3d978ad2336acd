"""
Модели входящих событий
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TriggerEvent(BaseModel):
    """Внешнее событие: kind (push, schedule, ...) и ref"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(..., min_length=1, description="Тип события")
    ref: str = Field(default="", description="Ветка, тег или timestamp")


class ManualRunRequest(BaseModel):
    """Явный ручной запуск, обходит сопоставление триггеров"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ref: Optional[str] = Field(default=None, description="Ref для информации")
    actor: Optional[str] = Field(default=None, description="Кто запустил")


RunRequest = Union[TriggerEvent, ManualRunRequest]
