"""
Pipeline Executor - scheduler одного run

Обеспечивает:
- Этапы как barrier: этап N+1 стартует только после терминального
  состояния всех instances этапа N
- Параллельное выполнение instances этапа через bounded worker pool
- Жизненный цикл instance: сервисы -> шаги -> артефакты, гарантированная
  остановка сервисов на любом пути выхода
- Политику fail-fast и отмену run
- Сборку артефактов и Run Report

Все изменяемое состояние (pool, сигнал отмены, агрегаты) принадлежит
объекту PipelineRun, поэтому параллельные run не влияют друг на друга.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, List, Optional

import structlog

from devflow_core.config.models import RunConfig
from devflow_core.exceptions import (
    CancellationError,
    ExecutionError,
    ResolutionError,
    ServiceStartError,
    wrap_execution_error,
)
from devflow_core.models.definition import Pipeline, PipelineCatalog
from devflow_core.models.events import RunRequest
from devflow_core.observability import metrics as m
from devflow_core.observability.metrics import MetricsCollector
from devflow_core.pipeline.matrix import expand_pipeline
from devflow_core.pipeline.report import (
    InstanceStatus,
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
    resolve_service,
    resolve_step,
)
from devflow_core.pipeline.triggers import TriggerMatcher
from devflow_core.pipeline.validation import validate_catalog, validate_pipeline
from devflow_core.runtime.base import ProcessRuntime, ServiceHandle, ServiceRuntime

logger = structlog.get_logger(__name__)


class WorkerPool:
    """Bounded пул слотов одного run

    Слоты выдаются в порядке запроса: instances запрашивают слот в порядке
    создания, поэтому при нехватке слотов первыми стартуют первые.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("Worker pool limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._active = 0
        self.peak = 0

    @property
    def active(self) -> int:
        return self._active

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            self._active += 1
            self.peak = max(self.peak, self._active)
            try:
                yield
            finally:
                self._active -= 1


class PipelineRun:
    """
    Один запуск pipeline

    Функциональность:
    - plan: валидация и раскрытие matrix (ConfigError до старта этапов)
    - execute: выполнение этапов и сборка Run Report
    - cancel: отмена ожидающих и прерывание выполняющихся instances
    """

    def __init__(
        self,
        pipeline: Pipeline,
        service_runtime: ServiceRuntime,
        process_runtime: ProcessRuntime,
        config: Optional[RunConfig] = None,
        run_id: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.pipeline = pipeline
        self.config = config or RunConfig()
        self.run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"

        self._services = service_runtime
        self._processes = process_runtime
        self._metrics = metrics or MetricsCollector()

        # Execution state
        self._pool = WorkerPool(self.config.concurrency_limit)
        self._cancel_event = asyncio.Event()
        self._state_lock = asyncio.Lock()
        self._report: Optional[RunReport] = None

        self._logger = logger.bind(pipeline=pipeline.name, run_id=self.run_id)

    @property
    def report(self) -> Optional[RunReport]:
        return self._report

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def plan(self) -> RunReport:
        """
        Валидация definition tree и раскрытие matrix

        Raises:
            ConfigError: Структурные нарушения или превышение matrix cap
        """
        validate_pipeline(self.pipeline)
        stages = expand_pipeline(self.pipeline, self.config.matrix_cap)
        return RunReport(
            run_id=self.run_id, pipeline_name=self.pipeline.name, stages=stages
        )

    async def execute(self) -> RunReport:
        """Выполнение pipeline"""
        report = self.plan()
        self._report = report
        if self.cancel_requested:
            self._cancel_pending("Run cancelled before start")

        report.mark_started()
        self._logger.info(
            "Starting pipeline run",
            stages=len(report.stages),
            instances=len(report.instances),
            concurrency_limit=self.config.concurrency_limit,
            fail_fast=self.config.fail_fast,
        )

        try:
            await self._execute_stages(report)
        except asyncio.CancelledError:
            self.cancel("Run task cancelled")
            self._finalize(report, PipelineStatus.CANCELLED)
            raise

        self._finalize(report, self._final_status(report))
        return report

    async def _execute_stages(self, report: RunReport) -> None:
        halted_by: Optional[str] = None

        for stage in report.stages:
            if self.cancel_requested:
                self._skip_stage(stage, "Run cancelled")
                continue
            if halted_by is not None:
                self._skip_stage(
                    stage, f"Skipped: stage '{halted_by}' failed with fail-fast"
                )
                continue

            await self._run_stage(stage)

            if stage.status == StageStatus.FAILED and self.config.fail_fast:
                halted_by = stage.name
                self._logger.warning(
                    "Stage failed, skipping remaining stages", stage=stage.name
                )

    def _skip_stage(self, stage: StageReport, reason: str) -> None:
        stage.cancel_pending(reason)
        stage.status = StageStatus.CANCELLED
        self._logger.info("Stage skipped", stage=stage.name, reason=reason)

    async def _run_stage(self, stage: StageReport) -> None:
        """Выполнение этапа: все instances через worker pool"""
        stage.status = StageStatus.RUNNING
        stage_logger = self._logger.bind(stage=stage.name)
        stage_logger.info("Starting stage", instances=len(stage.instances))

        tasks = [
            asyncio.create_task(
                self._run_instance(stage, instance),
                name=f"{self.run_id}:{stage.name}:{instance.identity}",
            )
            for instance in stage.instances
        ]
        if tasks:
            await asyncio.gather(*tasks)

        stage.finalize()
        stage_logger.info("Stage completed", status=stage.status.value)

    async def _run_instance(self, stage: StageReport, instance: JobInstance) -> None:
        async with self._pool.slot():
            # Instance мог быть отменен, пока ждал слот
            if instance.status != InstanceStatus.PENDING:
                return
            if self.cancel_requested:
                instance.cancel("Run cancelled")
                return

            with self._metrics.track_active_gauge(
                m.ACTIVE_INSTANCES, {"pipeline": self.pipeline.name}
            ):
                await self._execute_instance(instance)

            # До освобождения слота: следующий instance не должен стартовать
            # раньше, чем сработает fail-fast
            async with self._state_lock:
                self._record_outcome(stage, instance)

    def _record_outcome(self, stage: StageReport, instance: JobInstance) -> None:
        """Обновление агрегатов этапа после завершения instance"""
        if instance.status != InstanceStatus.FAILED:
            return
        if not self.config.fail_fast or stage.aborted:
            return

        stage.aborted = True
        cancelled = stage.cancel_pending(
            f"Cancelled by fail-fast: '{instance.identity}' failed"
        )
        self._logger.warning(
            "Fail-fast triggered",
            stage=stage.name,
            failed_instance=instance.identity,
            cancelled_instances=cancelled,
        )

    async def _execute_instance(self, instance: JobInstance) -> None:
        """Жизненный цикл одного instance"""
        job = instance.job
        log = self._logger.bind(stage=instance.stage_name, instance=instance.identity)
        handles: List[ServiceHandle] = []
        outcome: Optional[Exception] = None

        try:
            try:
                instance.transition(InstanceStatus.STARTING_SERVICES)
                log.info("Instance started", bindings=instance.bindings)

                for service in job.services:
                    self._check_cancelled(instance)
                    resolved = resolve_service(
                        service, instance.bindings, instance.identity
                    )
                    handles.append(await self._start_service(instance, resolved, log))

                instance.transition(InstanceStatus.RUNNING_STEPS)

                for index, step in enumerate(job.steps):
                    self._check_cancelled(instance)
                    resolved_step = resolve_step(
                        step, index, instance.bindings, instance.identity
                    )
                    await self._run_step(instance, resolved_step, log)
            finally:
                await self._stop_services(handles, log)
        except asyncio.CancelledError:
            if not instance.is_terminal:
                instance.cancel("Run task cancelled")
            raise
        except (ResolutionError, ExecutionError, CancellationError) as e:
            outcome = e
        except Exception as e:
            outcome = wrap_execution_error(instance.identity, e)

        if isinstance(outcome, CancellationError):
            instance.cancel(str(outcome))
            log.warning("Instance cancelled")
        elif outcome is not None:
            instance.fail(outcome)
            log.error(
                "Instance failed", error=str(outcome), error_type=instance.error_type
            )
        else:
            instance.transition(InstanceStatus.COLLECTING_ARTIFACTS)
            instance.produced_artifacts = list(
                dict.fromkeys(artifact.path for artifact in job.artifacts)
            )
            instance.transition(InstanceStatus.SUCCEEDED)
            log.info(
                "Instance succeeded",
                artifacts=len(instance.produced_artifacts),
                duration=instance.duration_seconds,
            )

    def _check_cancelled(self, instance: JobInstance) -> None:
        if self.cancel_requested:
            raise CancellationError(
                f"Instance '{instance.identity}' cancelled", instance_id=instance.identity
            )

    async def _await_cancellable(
        self, awaitable: Awaitable[Any], instance: JobInstance
    ) -> Any:
        """Ожидание операции runtime, прерываемое запросом отмены run"""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if work.cancelled():
            raise CancellationError(
                f"Instance '{instance.identity}' aborted by cancel request",
                instance_id=instance.identity,
            )
        return work.result()

    async def _start_service(
        self, instance: JobInstance, service: ResolvedService, log
    ) -> ServiceHandle:
        log.debug("Starting service", service=service.name, image=service.image)
        try:
            handle = await self._await_cancellable(
                self._services.start(
                    service.image,
                    service.env,
                    service.host_port,
                    service.container_port,
                    name=service.name,
                ),
                instance,
            )
        except CancellationError:
            raise
        except ServiceStartError as e:
            if e.handle is not None:
                await self._stop_handle(e.handle, log)
            raise ExecutionError(
                f"Service '{service.name}' failed to start: {e.message}",
                instance_id=instance.identity,
                service_name=service.name,
            ) from e
        except Exception as e:
            raise ExecutionError(
                f"Service '{service.name}' failed to start: {e}",
                instance_id=instance.identity,
                service_name=service.name,
            ) from e

        log.info("Service started", service=service.name)
        return handle

    async def _stop_handle(self, handle: ServiceHandle, log) -> None:
        try:
            await self._services.stop(handle)
        except Exception as e:
            log.error("Service stop failed", service=handle.name, error=str(e))

    async def _stop_services(self, handles: List[ServiceHandle], log) -> None:
        """Остановка сервисов в обратном порядке старта"""
        for handle in reversed(handles):
            await self._stop_handle(handle, log)
        if handles:
            log.debug("Services stopped", count=len(handles))

    async def _run_step(self, instance: JobInstance, step: ResolvedStep, log) -> None:
        record = StepRecord(index=step.index, kind=step.kind, command=step.command)
        instance.step_records.append(record)
        labels = {"pipeline": self.pipeline.name, "kind": step.kind}

        log.info("Running step", step=step.index, command=step.command)
        started = time.monotonic()
        try:
            result = await self._await_cancellable(
                self._processes.run(step.command, step.args, self.config.working_dir),
                instance,
            )
        except CancellationError:
            self._metrics.increment_counter(m.STEPS_TOTAL, {**labels, "outcome": "cancelled"})
            raise
        except Exception as e:
            self._metrics.increment_counter(m.STEPS_TOTAL, {**labels, "outcome": "error"})
            raise ExecutionError(
                f"Step {step.index} ('{step.command}') runtime error: {e}",
                instance_id=instance.identity,
                step_index=step.index,
            ) from e
        finally:
            record.duration_seconds = time.monotonic() - started

        record.exit_status = result.exit_status
        record.output = result.output

        if result.exit_status != 0:
            self._metrics.increment_counter(m.STEPS_TOTAL, {**labels, "outcome": "failed"})
            raise ExecutionError(
                f"Step {step.index} ('{step.command}') exited with status "
                f"{result.exit_status}",
                instance_id=instance.identity,
                step_index=step.index,
                exit_status=result.exit_status,
            )

        self._metrics.increment_counter(m.STEPS_TOTAL, {**labels, "outcome": "succeeded"})

    def _cancel_pending(self, reason: str) -> int:
        if self._report is None:
            return 0
        return sum(stage.cancel_pending(reason) for stage in self._report.stages)

    @staticmethod
    def _final_status(report: RunReport) -> PipelineStatus:
        """Ошибка важнее отмены; отмена важнее успеха"""
        if any(stage.status == StageStatus.FAILED for stage in report.stages):
            return PipelineStatus.FAILED
        if any(i.status == InstanceStatus.CANCELLED for i in report.instances):
            return PipelineStatus.CANCELLED
        if any(stage.status == StageStatus.CANCELLED for stage in report.stages):
            return PipelineStatus.CANCELLED
        return PipelineStatus.SUCCEEDED

    def _finalize(self, report: RunReport, status: PipelineStatus) -> None:
        report.aggregate_artifacts()
        report.finish(status)

        pipeline_name = self.pipeline.name
        self._metrics.increment_counter(
            m.RUNS_TOTAL, {"pipeline": pipeline_name, "status": status.value}
        )
        if report.duration_seconds is not None:
            self._metrics.observe_histogram(
                m.RUN_DURATION, report.duration_seconds, {"pipeline": pipeline_name}
            )
        for instance in report.instances:
            self._metrics.increment_counter(
                m.INSTANCES_TOTAL,
                {
                    "pipeline": pipeline_name,
                    "stage": instance.stage_name,
                    "status": instance.status.value,
                },
            )
            if instance.duration_seconds is not None:
                self._metrics.observe_histogram(
                    m.INSTANCE_DURATION,
                    instance.duration_seconds,
                    {"pipeline": pipeline_name, "stage": instance.stage_name},
                )

        log_method = self._logger.info if report.is_success() else self._logger.error
        log_method(
            "Pipeline run finished",
            status=status.value,
            duration=report.duration_seconds,
            instances=report.status_counts(),
            artifacts=len(report.aggregated_artifacts),
            peak_concurrency=self._pool.peak,
        )

    # === Public API ===

    def cancel(self, reason: str = "Run cancelled") -> None:
        """Отмена run: ожидающие instances -> CANCELLED, выполняющиеся прерываются"""
        if self._cancel_event.is_set():
            return
        self._cancel_event.set()
        cancelled = self._cancel_pending(reason)
        self._logger.warning("Pipeline run cancel requested", pending_cancelled=cancelled)


class Engine:
    """
    Точка входа: сопоставление триггеров, запуск и отмена run

    Держит реестр активных run по run_id.
    """

    def __init__(
        self,
        service_runtime: ServiceRuntime,
        process_runtime: ProcessRuntime,
        metrics: Optional[MetricsCollector] = None,
        matcher: Optional[TriggerMatcher] = None,
    ):
        self.service_runtime = service_runtime
        self.process_runtime = process_runtime
        self.metrics = metrics or MetricsCollector()
        self.matcher = matcher or TriggerMatcher()
        self._runs: Dict[str, PipelineRun] = {}

    @property
    def active_run_ids(self) -> List[str]:
        return list(self._runs)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def create_run(
        self,
        pipeline: Pipeline,
        config: Optional[RunConfig] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        return PipelineRun(
            pipeline,
            self.service_runtime,
            self.process_runtime,
            config=config,
            run_id=run_id,
            metrics=self.metrics,
        )

    async def run(
        self,
        definition: Pipeline,
        request: RunRequest,
        config: Optional[RunConfig] = None,
        run_id: Optional[str] = None,
    ) -> Optional[RunReport]:
        """
        Запуск pipeline для события или ручного запроса

        Returns:
            RunReport, или None если ни один триггер не совпал

        Raises:
            ConfigError: Definition tree невалиден (до старта этапов)
        """
        if not self.matcher.should_run(definition, request):
            logger.info(
                "Pipeline not triggered",
                pipeline=definition.name,
                request=request.model_dump(),
            )
            return None

        pipeline_run = self.create_run(definition, config, run_id)
        if pipeline_run.run_id in self._runs:
            raise ValueError(f"Run '{pipeline_run.run_id}' is already active")

        self._runs[pipeline_run.run_id] = pipeline_run
        try:
            return await pipeline_run.execute()
        finally:
            self._runs.pop(pipeline_run.run_id, None)

    def cancel(self, run_id: str) -> bool:
        """Отмена активного run; False если run не найден"""
        pipeline_run = self._runs.get(run_id)
        if pipeline_run is None:
            logger.warning("Cancel requested for unknown run", run_id=run_id)
            return False
        pipeline_run.cancel()
        return True

    async def dispatch(
        self,
        catalog: PipelineCatalog,
        request: RunRequest,
        config: Optional[RunConfig] = None,
    ) -> List[RunReport]:
        """
        Запуск всех pipeline каталога, подходящих под событие

        Каждый pipeline - отдельный изолированный run; run выполняются
        параллельно. Все выбранные pipeline проверяются до старта первого.
        """
        validate_catalog(catalog)
        selected = self.matcher.select(catalog, request)
        run_config = config or RunConfig()

        for pipeline in selected:
            expand_pipeline(pipeline, run_config.matrix_cap)

        logger.info(
            "Dispatching pipelines",
            selected=[p.name for p in selected],
            total=len(catalog.pipelines),
        )
        reports = await asyncio.gather(
            *(self.run(pipeline, request, run_config) for pipeline in selected)
        )
        return [report for report in reports if report is not None]
