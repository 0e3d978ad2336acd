# packages/devflow-core/src/devflow_core/cli/main.py

"""
CLI interface для DevFlow engine

Команды:
- validate: Загрузка, валидация и раскрытие matrix всех pipeline файла
- plan: Таблица этапов и instances без выполнения
- run: Запуск pipeline локально (события или ручной запуск)
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import List, Optional, Tuple

import structlog
import typer
from pydantic import ValidationError
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from devflow_core.config import RunConfig, YAMLDefinitionLoader, merge_run_config
from devflow_core.exceptions import ConfigError, YAMLDefinitionError
from devflow_core.models import (
    ManualRunRequest,
    Pipeline,
    PipelineCatalog,
    TriggerEvent,
    TriggerKind,
)
from devflow_core.observability import configure_for_cli
from devflow_core.pipeline import (
    Engine,
    InstanceStatus,
    RunReport,
    expand_pipeline,
    validate_catalog,
)
from devflow_core.runtime import (
    DryRunProcessRuntime,
    InProcessServiceRuntime,
    SubprocessRuntime,
)

# Настройка CLI
app = typer.Typer(
    name="devflow",
    help="DevFlow pipeline engine CLI",
    add_completion=False,
)

console = Console()
logger = structlog.get_logger(__name__)

_STATUS_STYLES = {
    InstanceStatus.SUCCEEDED: "green",
    InstanceStatus.FAILED: "red",
    InstanceStatus.CANCELLED: "yellow",
}


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING", "--log-level", "-l", help="Log level (logs go to stderr)"
    ),
):
    """DevFlow pipeline engine"""
    configure_for_cli(log_level)


def _load(definition_path: Path) -> Tuple[PipelineCatalog, Optional[RunConfig]]:
    """Загрузка каталога и секции config; ошибки -> Exit(1)"""
    loader = YAMLDefinitionLoader()
    try:
        catalog = loader.load_catalog(definition_path)
        run_config = loader.load_run_config(definition_path)
    except YAMLDefinitionError as e:
        rprint(f"[red]Failed to load definitions:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    return catalog, run_config


def _select(catalog: PipelineCatalog, pipeline_name: Optional[str]) -> PipelineCatalog:
    if pipeline_name is None:
        return catalog

    pipeline = catalog.get(pipeline_name)
    if pipeline is None:
        rprint(
            f"[red]Error:[/red] Pipeline '{pipeline_name}' not found. "
            f"Available: {', '.join(catalog.names)}"
        )
        raise typer.Exit(1)
    return PipelineCatalog(pipelines=(pipeline,))


def _print_config_error(error: ConfigError) -> None:
    rprint(f"[red]✗ {escape(error.message)}[/red]")
    for problem in error.validation_errors:
        rprint(f"  - {escape(problem)}")


@app.command()
def validate(
    definition_path: Path = typer.Argument(..., help="Path to pipeline definitions"),
    matrix_cap: Optional[int] = typer.Option(
        None, "--matrix-cap", help="Override matrix size cap"
    ),
):
    """Validate pipeline definitions"""

    catalog, base_config = _load(definition_path)

    try:
        config = merge_run_config(base_config, {"matrix_cap": matrix_cap})
        validate_catalog(catalog)
        sizes = []
        for pipeline in catalog.pipelines:
            stages = expand_pipeline(pipeline, config.matrix_cap)
            sizes.append((pipeline, sum(len(stage.instances) for stage in stages)))
    except ConfigError as e:
        _print_config_error(e)
        raise typer.Exit(1)
    except ValidationError as e:
        rprint(f"[red]Invalid run configuration:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Pipelines")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Triggers", style="yellow")
    table.add_column("Stages", style="dim")
    table.add_column("Instances", style="green")

    for pipeline, instance_count in sizes:
        triggers = ", ".join(t.kind for t in pipeline.triggers) or "manual only"
        table.add_row(
            pipeline.name, triggers, str(len(pipeline.stages)), str(instance_count)
        )

    console.print(table)
    rprint(f"[green]✓ {len(sizes)} pipeline(s) valid[/green]")


@app.command()
def plan(
    definition_path: Path = typer.Argument(..., help="Path to pipeline definitions"),
    pipeline_name: Optional[str] = typer.Option(
        None, "--pipeline", "-p", help="Pipeline name"
    ),
    matrix_cap: Optional[int] = typer.Option(
        None, "--matrix-cap", help="Override matrix size cap"
    ),
):
    """Show stages and job instances without executing"""

    catalog, base_config = _load(definition_path)
    selected = _select(catalog, pipeline_name)

    try:
        config = merge_run_config(base_config, {"matrix_cap": matrix_cap})
        validate_catalog(selected)
        for pipeline in selected.pipelines:
            _print_plan(pipeline, config)
    except ConfigError as e:
        _print_config_error(e)
        raise typer.Exit(1)
    except ValidationError as e:
        rprint(f"[red]Invalid run configuration:[/red] {e}")
        raise typer.Exit(1)


def _print_plan(pipeline: Pipeline, config: RunConfig) -> None:
    """Вывод плана выполнения pipeline"""
    stages = expand_pipeline(pipeline, config.matrix_cap)

    table = Table(title=f"Pipeline '{pipeline.name}'")
    table.add_column("Order", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Instance", style="green")
    table.add_column("Bindings", style="yellow")

    for stage in stages:
        for instance in stage.instances:
            bindings = ", ".join(f"{k}={v}" for k, v in instance.bindings.items())
            table.add_row(
                str(instance.index + 1), stage.name, instance.identity, bindings or "-"
            )

    console.print(table)
    total = sum(len(stage.instances) for stage in stages)
    rprint(f"{pipeline.name}: {len(stages)} stages, {total} instances")


@app.command()
def run(
    definition_path: Path = typer.Argument(..., help="Path to pipeline definitions"),
    pipeline_name: Optional[str] = typer.Option(
        None, "--pipeline", "-p", help="Run only this pipeline"
    ),
    event: Optional[TriggerKind] = typer.Option(
        None, "--event", "-e", help="Trigger event kind"
    ),
    ref: str = typer.Option("", "--ref", "-r", help="Event ref (branch, tag, timestamp)"),
    manual: bool = typer.Option(
        False, "--manual", help="Manual run, bypasses trigger matching"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", help="Worker pool size"
    ),
    fail_fast: Optional[bool] = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Cancel remaining work on first failure"
    ),
    matrix_cap: Optional[int] = typer.Option(
        None, "--matrix-cap", help="Override matrix size cap"
    ),
    workdir: Optional[str] = typer.Option(
        None, "--workdir", "-w", help="Working directory for steps"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Do not execute step commands"),
    json_output: bool = typer.Option(False, "--json", help="Print run reports as JSON"),
):
    """Run pipelines locally"""

    if manual and event is not None:
        rprint("[red]Error:[/red] --manual and --event are mutually exclusive")
        raise typer.Exit(2)

    catalog, base_config = _load(definition_path)
    selected = _select(catalog, pipeline_name)

    try:
        config = merge_run_config(
            base_config,
            {
                "concurrency_limit": concurrency,
                "fail_fast": fail_fast,
                "matrix_cap": matrix_cap,
                "working_dir": workdir,
            },
        )
    except ValidationError as e:
        rprint(f"[red]Invalid run configuration:[/red] {e}")
        raise typer.Exit(1)

    if event is None:
        request = ManualRunRequest(ref=ref or None, actor="cli")
    else:
        request = TriggerEvent(kind=event.value, ref=ref)

    engine = Engine(
        InProcessServiceRuntime(),
        DryRunProcessRuntime() if dry_run else SubprocessRuntime(),
    )

    try:
        reports = asyncio.run(_execute(engine, selected, request, config))
    except ConfigError as e:
        _print_config_error(e)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps([r.to_dict() for r in reports], indent=2))
    elif not reports:
        rprint("[yellow]No pipeline matched the event[/yellow]")
    else:
        for report in reports:
            _print_report(report)

    if any(not report.is_success() for report in reports):
        raise typer.Exit(1)


async def _execute(
    engine: Engine,
    catalog: PipelineCatalog,
    request,
    config: RunConfig,
) -> List[RunReport]:
    """Запуск с отменой активных run по Ctrl+C"""
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        logger.warning("Interrupt received, cancelling runs")
        for run_id in engine.active_run_ids:
            engine.cancel(run_id)

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError) as e:
        logger.debug("SIGINT handler not installed", reason=str(e))
        handler_installed = False

    try:
        return await engine.dispatch(catalog, request, config)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_report(report: RunReport) -> None:
    """Вывод Run Report"""
    table = Table(title=f"Run {report.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Instance", style="green")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    for stage in report.stages:
        for instance in stage.instances:
            style = _STATUS_STYLES.get(instance.status, "white")
            details = escape(instance.error or ", ".join(instance.produced_artifacts))
            table.add_row(
                stage.name,
                instance.identity,
                f"[{style}]{instance.status.value}[/{style}]",
                details,
            )

    console.print(table)

    status_style = "green" if report.is_success() else "red"
    duration = report.duration_seconds or 0.0
    artifacts = "\n".join(report.aggregated_artifacts) or "none"
    console.print(
        Panel.fit(
            f"Status: [{status_style}]{report.status.value}[/{status_style}]\n"
            f"Duration: {duration:.2f}s\n"
            f"Artifacts:\n{artifacts}",
            title=f"Pipeline '{report.pipeline_name}'",
        )
    )


if __name__ == "__main__":
    app()
