"""
Run Report - изменяемое состояние одного run

Содержит Job Instances (создаются Matrix Expansion Engine), статусы
этапов и pipeline, собранные артефакты. Definition tree здесь только
читается.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from devflow_core.exceptions import DevflowError
from devflow_core.models.definition import Job


class InstanceStatus(Enum):
    """Статусы Job Instance"""

    PENDING = "pending"
    STARTING_SERVICES = "starting_services"
    RUNNING_STEPS = "running_steps"
    COLLECTING_ARTIFACTS = "collecting_artifacts"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(Enum):
    """Статусы этапа"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStatus(Enum):
    """Статусы pipeline run"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[InstanceStatus] = frozenset(
    {InstanceStatus.SUCCEEDED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset(
        {InstanceStatus.STARTING_SERVICES, InstanceStatus.CANCELLED}
    ),
    InstanceStatus.STARTING_SERVICES: frozenset(
        {
            InstanceStatus.RUNNING_STEPS,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.RUNNING_STEPS: frozenset(
        {
            InstanceStatus.COLLECTING_ARTIFACTS,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.COLLECTING_ARTIFACTS: frozenset(
        {InstanceStatus.SUCCEEDED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
    ),
}


class InvalidTransitionError(DevflowError):
    """Недопустимый переход состояния Job Instance"""

    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe(paths: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            result.append(path)
    return result


@dataclass
class StepRecord:
    """Результат одного шага instance"""

    index: int
    kind: str
    command: str
    exit_status: Optional[int] = None
    output: str = ""
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind,
            "command": self.command,
            "exit_status": self.exit_status,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class JobInstance:
    """Одно конкретное выполнение Job для одной комбинации осей"""

    identity: str
    stage_name: str
    job: Job = field(repr=False)
    bindings: Dict[str, str] = field(default_factory=dict)
    index: int = 0

    status: InstanceStatus = InstanceStatus.PENDING
    produced_artifacts: List[str] = field(default_factory=list)
    step_records: List[StepRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def job_name(self) -> str:
        return self.job.name

    @property
    def bound_context(self) -> Dict[str, str]:
        return dict(self.bindings)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def was_started(self) -> bool:
        return self.started_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def transition(self, status: InstanceStatus) -> None:
        """Переход в новое состояние с проверкой state machine"""
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Instance '{self.identity}' cannot move "
                f"from {self.status.value} to {status.value}"
            )

        if status == InstanceStatus.STARTING_SERVICES:
            self.started_at = _now()
        self.status = status
        if status in TERMINAL_STATUSES:
            self.finished_at = _now()

    def fail(self, error: Exception) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__
        self.transition(InstanceStatus.FAILED)

    def cancel(self, reason: str) -> None:
        self.error = reason
        self.error_type = "CancellationError"
        self.transition(InstanceStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "stage": self.stage_name,
            "job": self.job_name,
            "bound_context": self.bound_context,
            "status": self.status.value,
            "produced_artifacts": list(self.produced_artifacts),
            "steps": [record.to_dict() for record in self.step_records],
            "error": self.error,
            "error_type": self.error_type,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class StageReport:
    """Состояние этапа и его instances"""

    name: str
    instances: List[JobInstance] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    aborted: bool = False

    def get_instance(self, identity: str) -> Optional[JobInstance]:
        for instance in self.instances:
            if instance.identity == identity:
                return instance
        return None

    def pending_instances(self) -> List[JobInstance]:
        return [i for i in self.instances if i.status == InstanceStatus.PENDING]

    def cancel_pending(self, reason: str) -> int:
        """Перевод всех еще не стартовавших instances в CANCELLED"""
        pending = self.pending_instances()
        for instance in pending:
            instance.cancel(reason)
        return len(pending)

    def finalize(self) -> StageStatus:
        """Вычисление итогового статуса этапа по статусам instances"""
        statuses = [i.status for i in self.instances]

        if any(s == InstanceStatus.FAILED for s in statuses):
            self.status = StageStatus.FAILED
        elif all(s == InstanceStatus.SUCCEEDED for s in statuses):
            self.status = StageStatus.SUCCEEDED
        else:
            self.status = StageStatus.CANCELLED
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "instances": [i.to_dict() for i in self.instances],
        }


@dataclass
class RunReport:
    """Результат выполнения pipeline"""

    run_id: str
    pipeline_name: str
    stages: List[StageReport] = field(default_factory=list)
    status: PipelineStatus = PipelineStatus.PENDING

    aggregated_artifacts: List[str] = field(default_factory=list)
    error: Optional[str] = None

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def instances(self) -> List[JobInstance]:
        """Все instances в порядке создания"""
        return [i for stage in self.stages for i in stage.instances]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def is_success(self) -> bool:
        return self.status == PipelineStatus.SUCCEEDED

    def get_stage(self, name: str) -> Optional[StageReport]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def get_instance(self, stage_name: str, identity: str) -> Optional[JobInstance]:
        stage = self.get_stage(stage_name)
        return stage.get_instance(identity) if stage else None

    def failed_instances(self) -> List[JobInstance]:
        return [i for i in self.instances if i.status == InstanceStatus.FAILED]

    def mark_started(self) -> None:
        self.started_at = _now()
        self.status = PipelineStatus.RUNNING

    def finish(self, status: PipelineStatus) -> None:
        self.status = status
        self.finished_at = _now()

    def aggregate_artifacts(self) -> List[str]:
        """
        Объединение артефактов успешных instances

        Порядок - порядок создания instances, дубликаты по path убираются.
        Failed и cancelled instances ничего не добавляют.
        """
        self.aggregated_artifacts = _dedupe(
            path
            for instance in self.instances
            if instance.status == InstanceStatus.SUCCEEDED
            for path in instance.produced_artifacts
        )
        return self.aggregated_artifacts

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for instance in self.instances:
            counts[instance.status.value] = counts.get(instance.status.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "status": self.status.value,
            "aggregated_artifacts": list(self.aggregated_artifacts),
            "stages": [stage.to_dict() for stage in self.stages],
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }
