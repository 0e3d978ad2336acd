"""
Демонстрация программного API DevFlow engine

Загружает examples/devflow.yaml, показывает выбор pipeline по событиям,
затем запускает 'ci' с in-process runtimes и печатает Run Report.

    python examples/run_pipeline_demo.py
"""

import asyncio
import json
from pathlib import Path

from devflow_core import (
    Engine,
    ManualRunRequest,
    MetricsCollector,
    RunConfig,
    TriggerEvent,
    YAMLDefinitionLoader,
)
from devflow_core.observability import configure_for_development
from devflow_core.pipeline import expand_pipeline, validate_catalog
from devflow_core.runtime import DryRunProcessRuntime, InProcessServiceRuntime

EXAMPLES_DIR = Path(__file__).parent


async def main():
    configure_for_development()

    loader = YAMLDefinitionLoader(base_path=EXAMPLES_DIR)
    catalog = loader.load_catalog("devflow.yaml")
    validate_catalog(catalog)
    config = loader.load_run_config("devflow.yaml") or RunConfig()

    print("=== Plan ===")
    for pipeline in catalog.pipelines:
        stages = expand_pipeline(pipeline, config.matrix_cap)
        for stage in stages:
            identities = ", ".join(i.identity for i in stage.instances)
            print(f"{pipeline.name}/{stage.name}: {identities}")

    metrics = MetricsCollector()
    engine = Engine(InProcessServiceRuntime(), DryRunProcessRuntime(), metrics=metrics)

    print("\n=== Trigger matching ===")
    events = [
        TriggerEvent(kind="push", ref="refs/heads/main"),
        TriggerEvent(kind="tag", ref="v0.1.0"),
        TriggerEvent(kind="schedule", ref="2024-01-15T03:00:00"),
        TriggerEvent(kind="push", ref="feature/x"),
        ManualRunRequest(actor="demo"),
    ]
    for event in events:
        names = [p.name for p in engine.matcher.select(catalog, event)]
        print(f"{event!r} -> {names}")

    print("\n=== Run 'ci' ===")
    report = await engine.run(
        catalog.get("ci"), TriggerEvent(kind="push", ref="main"), config
    )
    print(json.dumps(report.to_dict(), indent=2))

    print("\n=== Metrics ===")
    print(metrics.export_metrics())


if __name__ == "__main__":
    asyncio.run(main())
