"""
Система метрик для DevFlow engine

Prometheus метрики run, instances и шагов. Каждый MetricsCollector имеет
собственный CollectorRegistry.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = structlog.get_logger(__name__)


class MetricType(Enum):
    """Типы метрик"""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass
class MetricDefinition:
    """Определение метрики"""

    name: str
    help: str
    metric_type: MetricType
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None  # Для histogram


RUNS_TOTAL = "devflow_runs_total"
RUN_DURATION = "devflow_run_duration_seconds"
INSTANCES_TOTAL = "devflow_instances_total"
INSTANCE_DURATION = "devflow_instance_duration_seconds"
ACTIVE_INSTANCES = "devflow_active_instances"
STEPS_TOTAL = "devflow_step_executions_total"

_STANDARD_METRICS = (
    MetricDefinition(
        name=RUNS_TOTAL,
        help="Total number of pipeline runs",
        metric_type=MetricType.COUNTER,
        labels=["pipeline", "status"],
    ),
    MetricDefinition(
        name=RUN_DURATION,
        help="Pipeline run duration in seconds",
        metric_type=MetricType.HISTOGRAM,
        labels=["pipeline"],
        buckets=[1.0, 5.0, 30.0, 60.0, 300.0, 600.0, 1800.0, 3600.0],
    ),
    MetricDefinition(
        name=INSTANCES_TOTAL,
        help="Total number of job instances by terminal status",
        metric_type=MetricType.COUNTER,
        labels=["pipeline", "stage", "status"],
    ),
    MetricDefinition(
        name=INSTANCE_DURATION,
        help="Job instance duration in seconds",
        metric_type=MetricType.HISTOGRAM,
        labels=["pipeline", "stage"],
        buckets=[0.1, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 1800.0],
    ),
    MetricDefinition(
        name=ACTIVE_INSTANCES,
        help="Number of job instances holding a worker pool slot",
        metric_type=MetricType.GAUGE,
        labels=["pipeline"],
    ),
    MetricDefinition(
        name=STEPS_TOTAL,
        help="Total number of step executions",
        metric_type=MetricType.COUNTER,
        labels=["pipeline", "kind", "outcome"],
    ),
)


class MetricsCollector:
    """
    Сборщик метрик engine

    Предоставляет:
    - Стандартные метрики run / instance / step
    - Prometheus экспорт
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._logger = structlog.get_logger(component="metrics_collector")

        for definition in _STANDARD_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition) -> None:
        """Регистрация новой метрики"""
        with self._lock:
            if definition.name in self._metrics:
                self._logger.warning(
                    "Metric already registered", metric=definition.name
                )
                return

            if definition.metric_type == MetricType.COUNTER:
                metric = Counter(
                    definition.name,
                    definition.help,
                    definition.labels,
                    registry=self.registry,
                )
            elif definition.metric_type == MetricType.HISTOGRAM:
                metric = Histogram(
                    definition.name,
                    definition.help,
                    definition.labels,
                    buckets=definition.buckets or Histogram.DEFAULT_BUCKETS,
                    registry=self.registry,
                )
            elif definition.metric_type == MetricType.GAUGE:
                metric = Gauge(
                    definition.name,
                    definition.help,
                    definition.labels,
                    registry=self.registry,
                )
            else:
                raise ValueError(f"Unsupported metric type: {definition.metric_type}")

            self._metrics[definition.name] = metric

    def get_metric(self, name: str) -> Optional[Any]:
        """Получение метрики по имени"""
        return self._metrics.get(name)

    def increment_counter(
        self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1.0
    ) -> None:
        metric = self.get_metric(name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).inc(value)

    def observe_histogram(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        metric = self.get_metric(name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).observe(value)

    @contextmanager
    def track_active_gauge(self, name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager для отслеживания активных операций"""
        metric = self.get_metric(name)
        target = metric.labels(**labels) if (metric is not None and labels) else metric
        if target is not None:
            target.inc()
        try:
            yield
        finally:
            if target is not None:
                target.dec()

    @contextmanager
    def time_histogram(self, name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager для измерения времени выполнения"""
        start_time = time.monotonic()
        try:
            yield
        finally:
            self.observe_histogram(name, time.monotonic() - start_time, labels)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Текущее значение sample из registry"""
        return self.registry.get_sample_value(name, labels or {})

    def export_metrics(self) -> str:
        """Экспорт метрик в формате Prometheus"""
        return generate_latest(self.registry).decode("utf-8")
