"""
Модели definition tree и событий
"""

from devflow_core.models.definition import (
    Artifact,
    EnvVar,
    Job,
    ManualTrigger,
    MatrixAxis,
    Pipeline,
    PipelineCatalog,
    PullRequestTrigger,
    PushTrigger,
    RunStep,
    ScheduleTrigger,
    ScriptStep,
    Service,
    Stage,
    Step,
    StepArg,
    StepKind,
    TagTrigger,
    Trigger,
    TriggerKind,
)
from devflow_core.models.events import ManualRunRequest, RunRequest, TriggerEvent

__all__ = [
    "Artifact",
    "EnvVar",
    "Job",
    "ManualTrigger",
    "MatrixAxis",
    "Pipeline",
    "PipelineCatalog",
    "PullRequestTrigger",
    "PushTrigger",
    "RunStep",
    "ScheduleTrigger",
    "ScriptStep",
    "Service",
    "Stage",
    "Step",
    "StepArg",
    "StepKind",
    "TagTrigger",
    "Trigger",
    "TriggerKind",
    "ManualRunRequest",
    "RunRequest",
    "TriggerEvent",
]
