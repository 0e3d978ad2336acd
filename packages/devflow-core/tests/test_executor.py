"""
Тесты Scheduler / Executor и Engine
"""

import asyncio
import time

import pytest

from devflow_core.config import RunConfig
from devflow_core.exceptions import ConfigError
from devflow_core.models import ManualRunRequest, PipelineCatalog, TriggerEvent
from devflow_core.observability import metrics as m
from devflow_core.pipeline import Engine, InstanceStatus, PipelineStatus, StageStatus
from devflow_core.runtime import SubprocessRuntime

from conftest import ScriptedProcessRuntime, build_pipeline, job

MANUAL = ManualRunRequest(actor="tests")


def _two_stage_pipeline(first_jobs, second_jobs=None, **extra):
    data = {
        "name": "ci",
        "stages": [
            {"name": "test", "jobs": first_jobs},
            {"name": "deploy", "jobs": second_jobs or [job("ship", "ship")]},
        ],
    }
    data.update(extra)
    return build_pipeline(data)


class TestSuccessfulRun:
    """Успешное выполнение"""

    @pytest.mark.asyncio
    async def test_steps_services_and_artifacts(self, engine, service_runtime, process_runtime):
        """Сервисы стартуют по порядку, останавливаются в обратном"""
        pipeline = build_pipeline(
            {
                "name": "ci",
                "artifacts": [{"path": "dist/*"}],
                "stages": [
                    {
                        "name": "build",
                        "jobs": [
                            {
                                "name": "compile",
                                "services": [
                                    {"name": "db", "image": "postgres:16"},
                                    {"name": "cache", "image": "redis:7"},
                                ],
                                "steps": [
                                    {"kind": "run", "command": "make deps"},
                                    {"kind": "run", "command": "make build"},
                                ],
                                "artifacts": [
                                    {"path": "dist/app.whl"},
                                    {"path": "dist/app.whl"},
                                    {"path": "build.log"},
                                ],
                            }
                        ],
                    }
                ],
            }
        )

        report = await engine.run(pipeline, MANUAL, run_id="run_ok")

        assert report.status == PipelineStatus.SUCCEEDED
        assert report.run_id == "run_ok"
        assert process_runtime.calls == ["make deps", "make build"]
        assert service_runtime.events == [
            ("start", "db"),
            ("start", "cache"),
            ("stop", "cache"),
            ("stop", "db"),
        ]
        assert not service_runtime.active

        instance = report.get_instance("build", "compile")
        assert instance.status == InstanceStatus.SUCCEEDED
        assert instance.produced_artifacts == ["dist/app.whl", "build.log"]
        assert [r.exit_status for r in instance.step_records] == [0, 0]
        # Pipeline artifacts не фильтруют объединение
        assert report.aggregated_artifacts == ["dist/app.whl", "build.log"]
        assert engine.active_run_ids == []

    @pytest.mark.asyncio
    async def test_pipeline_artifacts_do_not_filter_union(self, engine):
        """Объявленные артефакты pipeline не отбрасывают пути instances"""
        pipeline = build_pipeline(
            {
                "name": "ci",
                "artifacts": [{"path": "reports/*.xml"}],
                "stages": [
                    {
                        "name": "build",
                        "jobs": [job("wheel", "make", artifacts=[{"path": "dist/app.whl"}])],
                    }
                ],
            }
        )

        report = await engine.run(pipeline, MANUAL)

        assert report.get_instance("build", "wheel").produced_artifacts == ["dist/app.whl"]
        assert report.aggregated_artifacts == ["dist/app.whl"]

    @pytest.mark.asyncio
    async def test_matrix_values_reach_runtimes(self, engine, service_runtime, process_runtime):
        pipeline = build_pipeline(
            {
                "name": "ci",
                "stages": [
                    {
                        "name": "test",
                        "jobs": [
                            {
                                "name": "unit",
                                "matrix": [{"name": "py", "values": ["3.11", "3.12"]}],
                                "services": [
                                    {
                                        "name": "db",
                                        "image": "postgres:16",
                                        "env": [{"name": "DB_NAME", "value": "test_${py}"}],
                                    }
                                ],
                                "steps": [
                                    {
                                        "kind": "run",
                                        "command": "tox -e py${py}",
                                        "args": [{"name": "report", "value": "junit-${py}.xml"}],
                                    },
                                    {"kind": "script", "command": "ci/upload.sh", "shell": "bash"},
                                ],
                            }
                        ],
                    }
                ],
            }
        )
        config = RunConfig(concurrency_limit=1, working_dir="/srv/checkout")

        report = await engine.run(pipeline, MANUAL, config)

        assert report.is_success()
        assert process_runtime.calls == [
            "tox -e py3.11",
            "bash ci/upload.sh",
            "tox -e py3.12",
            "bash ci/upload.sh",
        ]
        assert process_runtime.call_args["tox -e py3.12"] == {"report": "junit-3.12.xml"}
        assert set(process_runtime.working_dirs) == {"/srv/checkout"}
        assert [h.metadata["env"]["DB_NAME"] for h in service_runtime.started] == [
            "test_3.11",
            "test_3.12",
        ]
        assert report.get_instance("test", "unit-3.12").bound_context == {"py": "3.12"}

    @pytest.mark.asyncio
    async def test_not_triggered_returns_none(self, engine, process_runtime):
        pipeline = _two_stage_pipeline(
            [job("unit", "pytest")], triggers=[{"kind": "tag", "pattern": "v*"}]
        )

        report = await engine.run(pipeline, TriggerEvent(kind="push", ref="main"))

        assert report is None
        assert process_runtime.calls == []


class TestFailurePolicy:
    """fail-fast и накопление ошибок"""

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_pending_and_later_stages(self, engine, process_runtime):
        """Первый падает: второй (не стартовавший) CANCELLED, дальше не идем"""
        process_runtime.fail("first")
        pipeline = _two_stage_pipeline([job("a", "first"), job("b", "second")])
        config = RunConfig(concurrency_limit=1, fail_fast=True)

        report = await engine.run(pipeline, MANUAL, config)

        assert report.status == PipelineStatus.FAILED
        test_stage, deploy_stage = report.stages
        assert test_stage.status == StageStatus.FAILED
        assert test_stage.get_instance("a").status == InstanceStatus.FAILED
        assert test_stage.get_instance("b").status == InstanceStatus.CANCELLED
        assert deploy_stage.status == StageStatus.CANCELLED
        assert deploy_stage.get_instance("ship").status == InstanceStatus.CANCELLED
        assert process_runtime.calls == ["first"]

    @pytest.mark.asyncio
    async def test_fail_fast_lets_running_siblings_finish(self, engine, process_runtime):
        process_runtime.fail("first")
        gate = process_runtime.gate("second")
        pipeline = _two_stage_pipeline([job("a", "first"), job("b", "second")])
        config = RunConfig(concurrency_limit=2, fail_fast=True)

        task = asyncio.create_task(engine.run(pipeline, MANUAL, config))
        await process_runtime.started("second").wait()
        await asyncio.sleep(0.01)
        gate.set()
        report = await task

        assert report.get_instance("test", "a").status == InstanceStatus.FAILED
        assert report.get_instance("test", "b").status == InstanceStatus.SUCCEEDED
        assert report.get_stage("deploy").status == StageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_without_fail_fast_next_stage_runs(self, engine, process_runtime):
        """fail_fast=false: оба терминальны, следующий этап выполняется"""
        process_runtime.fail("first", exit_status=2)
        pipeline = _two_stage_pipeline([job("a", "first"), job("b", "second")])
        config = RunConfig(concurrency_limit=1, fail_fast=False)

        report = await engine.run(pipeline, MANUAL, config)

        assert report.get_instance("test", "a").status == InstanceStatus.FAILED
        assert report.get_instance("test", "b").status == InstanceStatus.SUCCEEDED
        assert report.get_stage("test").status == StageStatus.FAILED
        assert report.get_stage("deploy").status == StageStatus.SUCCEEDED
        assert report.status == PipelineStatus.FAILED
        assert process_runtime.calls == ["first", "second", "ship"]

        failed = report.get_instance("test", "a")
        assert failed.error_type == "ExecutionError"
        assert "exited with status 2" in failed.error

    @pytest.mark.asyncio
    async def test_step_failure_stops_remaining_steps(self, engine, service_runtime, process_runtime):
        process_runtime.fail("lint")
        pipeline = build_pipeline(
            {
                "name": "ci",
                "stages": [
                    {
                        "name": "check",
                        "jobs": [
                            job(
                                "lint",
                                "lint",
                                "never",
                                services=[{"name": "db", "image": "postgres"}],
                                artifacts=[{"path": "lint.txt"}],
                            )
                        ],
                    }
                ],
            }
        )

        report = await engine.run(pipeline, MANUAL)

        instance = report.get_instance("check", "lint")
        assert instance.status == InstanceStatus.FAILED
        assert instance.produced_artifacts == []
        assert process_runtime.calls == ["lint"]
        assert service_runtime.events == [("start", "db"), ("stop", "db")]
        assert report.aggregated_artifacts == []

    @pytest.mark.asyncio
    async def test_unresolved_placeholder_fails_only_that_instance(self, engine, process_runtime):
        pipeline = _two_stage_pipeline(
            [
                job("broken", "deploy ${target}"),
                job("fine", "pytest", artifacts=[{"path": "junit.xml"}]),
            ]
        )
        config = RunConfig(fail_fast=False)

        report = await engine.run(pipeline, MANUAL, config)

        broken = report.get_instance("test", "broken")
        assert broken.status == InstanceStatus.FAILED
        assert broken.error_type == "ResolutionError"
        assert report.get_instance("test", "fine").status == InstanceStatus.SUCCEEDED
        assert report.aggregated_artifacts == ["junit.xml"]
        assert "deploy ${target}" not in process_runtime.calls

    @pytest.mark.asyncio
    async def test_process_runtime_error_becomes_execution_error(self, engine, process_runtime):
        process_runtime.raise_on("pytest", OSError("no such file"))
        pipeline = _two_stage_pipeline([job("unit", "pytest")])

        report = await engine.run(pipeline, MANUAL)

        instance = report.get_instance("test", "unit")
        assert instance.status == InstanceStatus.FAILED
        assert instance.error_type == "ExecutionError"
        assert "no such file" in instance.error


class TestServices:
    """Жизненный цикл сервисов"""

    @pytest.mark.asyncio
    async def test_partial_handle_is_stopped(self, engine, service_runtime, process_runtime):
        """Частично созданный handle из ServiceStartError останавливается"""
        service_runtime.fail("broken:latest", partial=True)
        pipeline = _two_stage_pipeline(
            [
                job(
                    "it",
                    "pytest",
                    services=[
                        {"name": "db", "image": "postgres"},
                        {"name": "queue", "image": "broken:latest"},
                    ],
                )
            ]
        )

        report = await engine.run(pipeline, MANUAL)

        instance = report.get_instance("test", "it")
        assert instance.status == InstanceStatus.FAILED
        assert "Service 'queue' failed to start" in instance.error
        assert process_runtime.calls == []
        assert service_runtime.events == [
            ("start", "db"),
            ("start_failed", "queue"),
            ("stop", "queue"),
            ("stop", "db"),
        ]
        assert not service_runtime.active

    @pytest.mark.asyncio
    async def test_stop_errors_do_not_change_outcome(self, engine, service_runtime):
        service_runtime.fail_on_stop = True
        pipeline = _two_stage_pipeline(
            [job("it", "pytest", services=[{"name": "db", "image": "postgres"}])]
        )

        report = await engine.run(pipeline, MANUAL)

        assert report.get_instance("test", "it").status == InstanceStatus.SUCCEEDED
        assert ("stop", "db") in service_runtime.events


class TestScheduling:
    """Worker pool и барьеры этапов"""

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, service_runtime):
        process_runtime = ScriptedProcessRuntime(delay=0.01)
        engine = Engine(service_runtime, process_runtime)
        pipeline = _two_stage_pipeline(
            [
                job(
                    "unit",
                    "pytest -k ${shard}",
                    matrix=[{"name": "shard", "values": [str(i) for i in range(6)]}],
                )
            ]
        )

        report = await engine.run(pipeline, MANUAL, RunConfig(concurrency_limit=2))

        assert report.is_success()
        assert process_runtime.peak == 2

    @pytest.mark.asyncio
    async def test_fifo_start_order(self, engine, process_runtime):
        pipeline = _two_stage_pipeline(
            [
                job(
                    "unit",
                    "run ${n}",
                    matrix=[{"name": "n", "values": ["1", "2", "3", "4"]}],
                ),
                job("lint", "lint"),
            ]
        )

        await engine.run(pipeline, MANUAL, RunConfig(concurrency_limit=1))

        assert process_runtime.calls == ["run 1", "run 2", "run 3", "run 4", "lint", "ship"]

    @pytest.mark.asyncio
    async def test_stage_barrier(self, engine, process_runtime):
        """Этап 2 не стартует, пока этап 1 не завершен полностью"""
        gate = process_runtime.gate("slow")
        pipeline = _two_stage_pipeline([job("fast", "fast"), job("slow", "slow")])

        task = asyncio.create_task(engine.run(pipeline, MANUAL, RunConfig(concurrency_limit=4)))
        await process_runtime.started("slow").wait()
        for _ in range(5):
            await asyncio.sleep(0)

        assert "ship" not in process_runtime.calls
        gate.set()
        report = await task

        assert report.is_success()
        assert process_runtime.calls[-1] == "ship"


class TestCancellation:
    """Отмена run"""

    @pytest.mark.asyncio
    async def test_cancel_running_run(self, engine, service_runtime, process_runtime):
        process_runtime.gate("build 1")
        pipeline = _two_stage_pipeline(
            [
                job(
                    "build",
                    "build ${n}",
                    matrix=[{"name": "n", "values": ["1", "2"]}],
                    services=[{"name": "db", "image": "postgres"}],
                )
            ]
        )

        task = asyncio.create_task(
            engine.run(pipeline, MANUAL, RunConfig(concurrency_limit=1), run_id="run_c")
        )
        await process_runtime.started("build 1").wait()

        assert engine.active_run_ids == ["run_c"]
        assert engine.cancel("run_c") is True
        report = await task

        assert report.status == PipelineStatus.CANCELLED
        assert report.get_instance("test", "build-1").status == InstanceStatus.CANCELLED
        assert report.get_instance("test", "build-2").status == InstanceStatus.CANCELLED
        assert report.get_stage("deploy").status == StageStatus.CANCELLED
        assert process_runtime.cancelled == ["build 1"]
        assert process_runtime.calls == ["build 1"]
        assert not service_runtime.active
        assert engine.active_run_ids == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_real_subprocess_step(self, service_runtime, tmp_path):
        """Отмена прерывает выполняющийся процесс шага, а не ждет его завершения"""
        engine = Engine(service_runtime, SubprocessRuntime())
        pipeline = _two_stage_pipeline([job("hang", "sleep 30")])
        config = RunConfig(working_dir=str(tmp_path))

        task = asyncio.create_task(engine.run(pipeline, MANUAL, config, run_id="run_s"))
        await asyncio.sleep(0.5)

        started = time.monotonic()
        assert engine.cancel("run_s") is True
        report = await asyncio.wait_for(task, timeout=5)

        assert time.monotonic() - started < 3
        assert report.status == PipelineStatus.CANCELLED
        assert report.get_instance("test", "hang").status == InstanceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, engine):
        assert engine.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_task_cancellation_cleans_up(self, engine, service_runtime, process_runtime):
        process_runtime.gate("hang")
        pipeline = _two_stage_pipeline(
            [job("hang", "hang", services=[{"name": "db", "image": "postgres"}])]
        )
        pipeline_run = engine.create_run(pipeline)

        task = asyncio.create_task(pipeline_run.execute())
        await process_runtime.started("hang").wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert not service_runtime.active
        assert pipeline_run.report.status == PipelineStatus.CANCELLED
        assert pipeline_run.report.get_instance("test", "hang").status == InstanceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_duplicate_active_run_id(self, engine, process_runtime):
        gate = process_runtime.gate("slow")
        pipeline = _two_stage_pipeline([job("slow", "slow")])

        task = asyncio.create_task(engine.run(pipeline, MANUAL, run_id="same"))
        await process_runtime.started("slow").wait()

        with pytest.raises(ValueError, match="already active"):
            await engine.run(pipeline, MANUAL, run_id="same")

        gate.set()
        assert (await task).is_success()


class TestEngine:
    """Валидация, dispatch и метрики"""

    @pytest.mark.asyncio
    async def test_config_error_before_any_stage(self, engine, process_runtime):
        pipeline = _two_stage_pipeline(
            [job("big", "x", matrix=[{"name": "n", "values": ["1", "2", "3"]}])]
        )

        with pytest.raises(ConfigError):
            await engine.run(pipeline, MANUAL, RunConfig(matrix_cap=2))

        assert process_runtime.calls == []
        assert engine.active_run_ids == []

    @pytest.mark.asyncio
    async def test_structural_violation_rejected(self, engine, process_runtime):
        pipeline = _two_stage_pipeline([job("a", "x"), job("a", "y")])

        with pytest.raises(ConfigError, match="duplicate job 'a'"):
            await engine.run(pipeline, MANUAL)

        assert process_runtime.calls == []

    @pytest.mark.asyncio
    async def test_dispatch_runs_matching_pipelines(self, engine, process_runtime):
        catalog = PipelineCatalog(
            pipelines=(
                build_pipeline(
                    {
                        "name": "ci",
                        "triggers": [{"kind": "push", "pattern": "*"}],
                        "stages": [{"name": "s", "jobs": [job("a", "ci-step")]}],
                    }
                ),
                build_pipeline(
                    {
                        "name": "release",
                        "triggers": [{"kind": "tag", "pattern": "v*"}],
                        "stages": [{"name": "s", "jobs": [job("a", "release-step")]}],
                    }
                ),
                build_pipeline(
                    {
                        "name": "nightly",
                        "stages": [{"name": "s", "jobs": [job("a", "nightly-step")]}],
                    }
                ),
            )
        )

        reports = await engine.dispatch(catalog, TriggerEvent(kind="push", ref="main"))

        assert [r.pipeline_name for r in reports] == ["ci"]
        assert process_runtime.calls == ["ci-step"]
        assert len({r.run_id for r in reports}) == len(reports)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, engine, metrics, process_runtime):
        process_runtime.fail("bad")
        pipeline = _two_stage_pipeline([job("a", "good"), job("b", "bad")])

        await engine.run(pipeline, MANUAL, RunConfig(fail_fast=False))

        assert metrics.sample(m.RUNS_TOTAL, {"pipeline": "ci", "status": "failed"}) == 1.0
        assert (
            metrics.sample(
                m.STEPS_TOTAL, {"pipeline": "ci", "kind": "run", "outcome": "failed"}
            )
            == 1.0
        )
        assert (
            metrics.sample(
                m.INSTANCES_TOTAL, {"pipeline": "ci", "stage": "test", "status": "succeeded"}
            )
            == 1.0
        )
        assert metrics.sample(m.ACTIVE_INSTANCES, {"pipeline": "ci"}) == 0.0
        assert "devflow_runs_total" in metrics.export_metrics()
