"""
Observability package для DevFlow engine
"""

from devflow_core.observability.logging import (
    LoggerConfig,
    configure_for_cli,
    configure_for_development,
    get_logger,
    sanitize_sensitive_data,
    setup_logging,
)
from devflow_core.observability.metrics import (
    MetricDefinition,
    MetricsCollector,
    MetricType,
)

__all__ = [
    # Logging
    "LoggerConfig",
    "configure_for_cli",
    "configure_for_development",
    "get_logger",
    "sanitize_sensitive_data",
    "setup_logging",
    # Metrics
    "MetricDefinition",
    "MetricsCollector",
    "MetricType",
]
