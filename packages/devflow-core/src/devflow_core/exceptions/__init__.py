"""
Exceptions package
"""

from devflow_core.exceptions.errors import (
    DevflowError,
    ConfigError,
    ResolutionError,
    ExecutionError,
    ServiceStartError,
    CancellationError,
    YAMLDefinitionError,
    create_config_error,
    wrap_execution_error,
)

__all__ = [
    "DevflowError",
    "ConfigError",
    "ResolutionError",
    "ExecutionError",
    "ServiceStartError",
    "CancellationError",
    "YAMLDefinitionError",
    "create_config_error",
    "wrap_execution_error",
]
