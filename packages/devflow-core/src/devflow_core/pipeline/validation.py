"""
Структурная валидация definition tree

Engine не доверяет внешнему парсеру: все инварианты дерева проверяются
заново перед запуском, все нарушения собираются в один ConfigError.
"""

from collections import Counter
from typing import Iterable, List

import structlog

from devflow_core.exceptions import create_config_error
from devflow_core.models.definition import Job, Pipeline, PipelineCatalog
from devflow_core.pipeline.triggers import trigger_pattern_error

logger = structlog.get_logger(__name__)


def _duplicates(names: Iterable[str]) -> List[str]:
    counts = Counter(names)
    return [name for name, count in counts.items() if count > 1]


def _job_errors(job: Job, where: str) -> List[str]:
    errors = []
    location = f"{where}/job '{job.name}'"

    for name in _duplicates(axis.name for axis in job.matrix):
        errors.append(f"{location}: duplicate matrix axis '{name}'")
    for axis in job.matrix:
        if not axis.values:
            errors.append(f"{location}: matrix axis '{axis.name}' has no values")

    for name in _duplicates(service.name for service in job.services):
        errors.append(f"{location}: duplicate service '{name}'")
    for service in job.services:
        for name in _duplicates(env.name for env in service.env):
            errors.append(
                f"{location}/service '{service.name}': duplicate env var '{name}'"
            )

    for index, step in enumerate(job.steps):
        for name in _duplicates(arg.name for arg in step.args):
            errors.append(f"{location}/step {index}: duplicate argument '{name}'")

    return errors


def collect_pipeline_errors(pipeline: Pipeline) -> List[str]:
    """Список всех нарушений инвариантов pipeline (пустой если все ОК)"""
    errors = []
    where = f"pipeline '{pipeline.name}'"

    for index, trigger in enumerate(pipeline.triggers):
        problem = trigger_pattern_error(trigger)
        if problem:
            errors.append(f"{where}/trigger {index} ({trigger.kind}): {problem}")

    for name in _duplicates(pipeline.stage_names):
        errors.append(f"{where}: duplicate stage '{name}'")

    for stage in pipeline.stages:
        stage_where = f"{where}/stage '{stage.name}'"
        for name in _duplicates(job.name for job in stage.jobs):
            errors.append(f"{stage_where}: duplicate job '{name}'")
        for job in stage.jobs:
            errors.extend(_job_errors(job, stage_where))

    return errors


def validate_pipeline(pipeline: Pipeline) -> None:
    """
    Валидация pipeline

    Raises:
        ConfigError: Если нарушен хотя бы один структурный инвариант
    """
    errors = collect_pipeline_errors(pipeline)
    if errors:
        logger.error(
            "Pipeline definition is invalid",
            pipeline=pipeline.name,
            error_count=len(errors),
        )
        raise create_config_error(
            f"Pipeline '{pipeline.name}' definition is invalid", errors
        )


def validate_catalog(catalog: PipelineCatalog) -> None:
    """Валидация каталога: уникальность имен и каждый pipeline"""
    errors = [
        f"duplicate pipeline name '{name}'" for name in _duplicates(catalog.names)
    ]
    for pipeline in catalog.pipelines:
        errors.extend(collect_pipeline_errors(pipeline))

    if errors:
        raise create_config_error("Pipeline catalog is invalid", errors)
