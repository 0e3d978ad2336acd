# packages/devflow-core/src/devflow_core/models/definition.py

"""
Pydantic модели definition tree

Definition tree неизменяем во время run: все модели frozen, дочерние
элементы хранятся в tuple в порядке объявления.

Включает:
- Pipeline / PipelineCatalog: корень дерева и набор загруженных pipeline
- Trigger: tagged variants (push, tag, pull_request, schedule, manual)
- Stage, Job, MatrixAxis, Service, EnvVar
- Step: tagged variants (run, script) и StepArg
- Artifact

Структурные инварианты (уникальность имен, непустые оси) здесь НЕ
проверяются: это делает pipeline.validation перед запуском.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class DefinitionModel(BaseModel):
    """Базовая модель узла definition tree"""

    model_config = ConfigDict(frozen=True, extra="forbid")


class TriggerKind(str, Enum):
    """Типы триггеров"""

    PUSH = "push"
    TAG = "tag"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class StepKind(str, Enum):
    """Типы шагов"""

    RUN = "run"
    SCRIPT = "script"


# === Triggers ===


class PushTrigger(DefinitionModel):
    """Push в ветку, pattern - glob по имени ветки"""

    kind: Literal["push"] = "push"
    pattern: str = Field(default="*", description="Glob по имени ветки")


class TagTrigger(DefinitionModel):
    """Создание тега, pattern - glob по имени тега"""

    kind: Literal["tag"] = "tag"
    pattern: str = Field(default="*", description="Glob по имени тега")


class PullRequestTrigger(DefinitionModel):
    """Pull request, pattern - glob по целевой ветке"""

    kind: Literal["pull_request"] = "pull_request"
    pattern: str = Field(default="*", description="Glob по целевой ветке")


class ScheduleTrigger(DefinitionModel):
    """Запуск по расписанию, pattern - cron выражение"""

    kind: Literal["schedule"] = "schedule"
    pattern: str = Field(..., description="Cron выражение (5 полей или @daily)")


class ManualTrigger(DefinitionModel):
    """Ручной запуск через событие kind=manual"""

    kind: Literal["manual"] = "manual"
    pattern: str = Field(default="*", description="Glob по ref события")


Trigger = Annotated[
    Union[PushTrigger, TagTrigger, PullRequestTrigger, ScheduleTrigger, ManualTrigger],
    Field(discriminator="kind"),
]


# === Services ===


class EnvVar(DefinitionModel):
    """Переменная окружения сервиса"""

    name: str = Field(..., min_length=1)
    value: str = Field(default="")


class Service(DefinitionModel):
    """Sidecar сервис, стартующий вместе с instance"""

    name: str = Field(..., min_length=1, description="Имя сервиса")
    image: str = Field(..., min_length=1, description="Образ сервиса")
    host_port: Optional[int] = Field(default=None, ge=1, le=65535)
    container_port: Optional[int] = Field(default=None, ge=1, le=65535)
    env: Tuple[EnvVar, ...] = Field(default=(), description="Переменные окружения")


# === Steps ===


class StepArg(DefinitionModel):
    """Именованный аргумент шага"""

    name: str = Field(..., min_length=1)
    value: str = Field(default="")


class RunStep(DefinitionModel):
    """Команда выполняется как есть"""

    kind: Literal["run"] = "run"
    command: str = Field(..., min_length=1, description="Команда")
    args: Tuple[StepArg, ...] = Field(default=())


class ScriptStep(DefinitionModel):
    """Скрипт, выполняемый через интерпретатор ``shell``"""

    kind: Literal["script"] = "script"
    command: str = Field(..., min_length=1, description="Путь к скрипту")
    shell: str = Field(default="sh", min_length=1, description="Интерпретатор")
    args: Tuple[StepArg, ...] = Field(default=())


Step = Annotated[Union[RunStep, ScriptStep], Field(discriminator="kind")]


# === Jobs / Stages / Pipeline ===


class Artifact(DefinitionModel):
    """Объявленный артефакт (path pattern)"""

    path: str = Field(..., min_length=1)


class MatrixAxis(DefinitionModel):
    """Ось build matrix"""

    name: str = Field(..., min_length=1)
    values: Tuple[str, ...] = Field(default=())


class Job(DefinitionModel):
    """Шаблон job, параметризованный build matrix"""

    name: str = Field(..., min_length=1, description="Имя job")
    image: Optional[str] = Field(default=None, description="Базовый образ")
    services: Tuple[Service, ...] = Field(default=())
    steps: Tuple[Step, ...] = Field(default=())
    artifacts: Tuple[Artifact, ...] = Field(default=())
    matrix: Tuple[MatrixAxis, ...] = Field(default=())

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(axis.name for axis in self.matrix)


class Stage(DefinitionModel):
    """Barrier-этап: jobs внутри выполняются параллельно"""

    name: str = Field(..., min_length=1)
    jobs: Tuple[Job, ...] = Field(default=())

    def get_job(self, name: str) -> Optional[Job]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None


class Pipeline(DefinitionModel):
    """Корень definition tree"""

    name: str = Field(..., min_length=1, description="Имя pipeline")
    triggers: Tuple[Trigger, ...] = Field(default=())
    stages: Tuple[Stage, ...] = Field(default=())
    artifacts: Tuple[Artifact, ...] = Field(default=())

    @property
    def stage_names(self) -> Tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    def get_stage(self, name: str) -> Optional[Stage]:
        """Получение этапа по имени"""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


class PipelineCatalog(DefinitionModel):
    """Набор pipeline, загруженных вместе"""

    pipelines: Tuple[Pipeline, ...] = Field(default=())

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.pipelines)

    def get(self, name: str) -> Optional[Pipeline]:
        for pipeline in self.pipelines:
            if pipeline.name == name:
                return pipeline
        return None
