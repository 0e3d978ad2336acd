"""
Matrix Expansion Engine

Job + оси matrix -> упорядоченная последовательность Job Instances.

- без осей: один instance с пустым binding context
- с осями: декартово произведение, последняя объявленная ось меняется
  быстрее всех (семантика вложенных циклов)
- identity = имя job + значения осей в порядке объявления через "-"
- размер произведения > matrix_cap -> ConfigError до создания instances
- совпадение identity внутри этапа -> ConfigError
"""

import itertools
import math
from typing import Dict, List, Tuple

import structlog

from devflow_core.config.models import DEFAULT_MATRIX_CAP
from devflow_core.exceptions import ConfigError, create_config_error
from devflow_core.models.definition import Job, Pipeline, Stage
from devflow_core.pipeline.report import JobInstance, StageReport

logger = structlog.get_logger(__name__)

IDENTITY_SEPARATOR = "-"


def matrix_size(job: Job) -> int:
    """Количество instances, которое даст job"""
    return math.prod(len(axis.values) for axis in job.matrix)


def instance_identity(job_name: str, values: Tuple[str, ...]) -> str:
    """Identity instance: имя job и значения осей в порядке объявления"""
    return IDENTITY_SEPARATOR.join((job_name,) + tuple(values))


def iter_bindings(job: Job):
    """Binding contexts job в порядке раскрытия"""
    names = job.axis_names
    for values in itertools.product(*(axis.values for axis in job.matrix)):
        yield values, dict(zip(names, values))


def check_matrix_cap(job: Job, matrix_cap: int, stage_name: str = "") -> None:
    size = matrix_size(job)
    if size > matrix_cap:
        where = f"stage '{stage_name}'/job '{job.name}'" if stage_name else f"job '{job.name}'"
        raise ConfigError(
            f"Matrix of {where} expands to {size} instances, cap is {matrix_cap}",
            validation_errors=[f"{where}: matrix size {size} exceeds cap {matrix_cap}"],
            details={"size": size, "cap": matrix_cap},
        )


def expand_job(
    job: Job,
    stage_name: str = "",
    matrix_cap: int = DEFAULT_MATRIX_CAP,
    start_index: int = 0,
) -> List[JobInstance]:
    """
    Раскрытие одного job в instances

    Args:
        job: Job из definition tree
        stage_name: Имя этапа-владельца
        matrix_cap: Максимальный размер произведения осей
        start_index: Индекс создания первого instance в run

    Raises:
        ConfigError: При превышении cap или совпадении identity
    """
    empty_axes = [axis.name for axis in job.matrix if not axis.values]
    if empty_axes:
        raise create_config_error(
            f"Matrix of job '{job.name}' has empty axes",
            [f"job '{job.name}': matrix axis '{name}' has no values" for name in empty_axes],
        )
    check_matrix_cap(job, matrix_cap, stage_name)

    instances = []
    seen: Dict[str, Tuple[str, ...]] = {}

    for offset, (values, bindings) in enumerate(iter_bindings(job)):
        identity = instance_identity(job.name, values)
        if identity in seen:
            raise create_config_error(
                f"Matrix of job '{job.name}' produces duplicate instance identities",
                [
                    f"identity '{identity}' produced by {list(seen[identity])} "
                    f"and {list(values)}"
                ],
            )
        seen[identity] = values
        instances.append(
            JobInstance(
                identity=identity,
                stage_name=stage_name,
                job=job,
                bindings=bindings,
                index=start_index + offset,
            )
        )

    return instances


def expand_stage(
    stage: Stage, matrix_cap: int = DEFAULT_MATRIX_CAP, start_index: int = 0
) -> StageReport:
    """Раскрытие всех jobs этапа; identity уникальны в пределах этапа"""
    instances: List[JobInstance] = []
    owners: Dict[str, str] = {}
    errors = []

    for job in stage.jobs:
        for instance in expand_job(
            job, stage.name, matrix_cap, start_index + len(instances)
        ):
            owner = owners.get(instance.identity)
            if owner is not None:
                errors.append(
                    f"stage '{stage.name}': identity '{instance.identity}' "
                    f"produced by jobs '{owner}' and '{job.name}'"
                )
                continue
            owners[instance.identity] = job.name
            instances.append(instance)

    if errors:
        raise create_config_error(
            f"Stage '{stage.name}' has colliding instance identities", errors
        )

    return StageReport(name=stage.name, instances=instances)


def expand_pipeline(
    pipeline: Pipeline, matrix_cap: int = DEFAULT_MATRIX_CAP
) -> List[StageReport]:
    """
    Раскрытие всего pipeline

    Caps всех jobs проверяются до создания первого instance, поэтому при
    ConfigError не создается ни одного instance.
    """
    for stage in pipeline.stages:
        for job in stage.jobs:
            check_matrix_cap(job, matrix_cap, stage.name)

    stages = []
    index = 0
    for stage in pipeline.stages:
        stage_report = expand_stage(stage, matrix_cap, index)
        index += len(stage_report.instances)
        stages.append(stage_report)

    logger.debug(
        "Pipeline expanded",
        pipeline=pipeline.name,
        stages=len(stages),
        instances=index,
    )
    return stages
