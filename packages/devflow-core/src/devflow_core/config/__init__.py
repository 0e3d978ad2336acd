# packages/devflow-core/src/devflow_core/config/__init__.py

"""
Configuration package

Включает:
- Pydantic модели runtime конфигурации
- YAML загрузчик definition tree
"""

from devflow_core.config.models import (
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_MATRIX_CAP,
    LogLevel,
    RunConfig,
    merge_run_config,
)
from devflow_core.config.yaml_loader import (
    YAMLDefinitionLoader,
    load_catalog,
    load_pipeline,
)

__all__ = [
    "DEFAULT_CONCURRENCY_LIMIT",
    "DEFAULT_MATRIX_CAP",
    "LogLevel",
    "RunConfig",
    "merge_run_config",
    "YAMLDefinitionLoader",
    "load_catalog",
    "load_pipeline",
]
