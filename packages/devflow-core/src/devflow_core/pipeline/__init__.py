"""
Pipeline execution package
"""

from devflow_core.pipeline.executor import Engine, PipelineRun, WorkerPool
from devflow_core.pipeline.matrix import (
    expand_job,
    expand_pipeline,
    expand_stage,
    instance_identity,
    matrix_size,
)
from devflow_core.pipeline.report import (
    InstanceStatus,
    InvalidTransitionError,
    JobInstance,
    PipelineStatus,
    RunReport,
    StageReport,
    StageStatus,
    StepRecord,
)
from devflow_core.pipeline.resolution import (
    ResolvedService,
    ResolvedStep,
    resolve,
    resolve_service,
    resolve_step,
)
from devflow_core.pipeline.triggers import CronExpression, TriggerMatcher, trigger_matches
from devflow_core.pipeline.validation import (
    collect_pipeline_errors,
    validate_catalog,
    validate_pipeline,
)

__all__ = [
    "Engine",
    "PipelineRun",
    "WorkerPool",
    "expand_job",
    "expand_pipeline",
    "expand_stage",
    "instance_identity",
    "matrix_size",
    "InstanceStatus",
    "InvalidTransitionError",
    "JobInstance",
    "PipelineStatus",
    "RunReport",
    "StageReport",
    "StageStatus",
    "StepRecord",
    "ResolvedService",
    "ResolvedStep",
    "resolve",
    "resolve_service",
    "resolve_step",
    "CronExpression",
    "TriggerMatcher",
    "trigger_matches",
    "collect_pipeline_errors",
    "validate_catalog",
    "validate_pipeline",
]
