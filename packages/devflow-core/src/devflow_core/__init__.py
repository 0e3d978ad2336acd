# packages/devflow-core/src/devflow_core/__init__.py

"""
DevFlow Core - engine выполнения CI/CD pipeline

Основные компоненты:
- Definition tree: frozen pydantic модели pipeline, этапов, jobs и шагов
- Matrix Expansion и Resolution: job -> конкретные instances
- Trigger Matcher: решение о запуске pipeline по событию
- Scheduler / Executor: этапы-барьеры, bounded worker pool, fail-fast
- Observability: структурированные логи и метрики
"""

__version__ = "0.1.0"

from devflow_core.config import (
    RunConfig,
    YAMLDefinitionLoader,
    load_catalog,
    load_pipeline,
)
from devflow_core.exceptions import (
    CancellationError,
    ConfigError,
    DevflowError,
    ExecutionError,
    ResolutionError,
    ServiceStartError,
    YAMLDefinitionError,
)
from devflow_core.models import (
    ManualRunRequest,
    Pipeline,
    PipelineCatalog,
    TriggerEvent,
)
from devflow_core.observability import MetricsCollector, get_logger, setup_logging
from devflow_core.pipeline import (
    Engine,
    InstanceStatus,
    PipelineRun,
    PipelineStatus,
    RunReport,
    StageStatus,
    TriggerMatcher,
)
from devflow_core.runtime import ProcessRuntime, ServiceRuntime

__all__ = [
    "__version__",
    # Config
    "RunConfig",
    "YAMLDefinitionLoader",
    "load_catalog",
    "load_pipeline",
    # Exceptions
    "CancellationError",
    "ConfigError",
    "DevflowError",
    "ExecutionError",
    "ResolutionError",
    "ServiceStartError",
    "YAMLDefinitionError",
    # Models
    "ManualRunRequest",
    "Pipeline",
    "PipelineCatalog",
    "TriggerEvent",
    # Observability
    "MetricsCollector",
    "get_logger",
    "setup_logging",
    # Execution
    "Engine",
    "InstanceStatus",
    "PipelineRun",
    "PipelineStatus",
    "RunReport",
    "StageStatus",
    "TriggerMatcher",
    # Runtime
    "ProcessRuntime",
    "ServiceRuntime",
    "main",
]


def main() -> None:
    """Entry point для CLI"""
    from devflow_core.cli.main import app

    app()
