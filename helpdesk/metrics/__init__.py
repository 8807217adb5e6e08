"""Application wide metrics utilities."""
from .definitions import DEFAULT_METRIC_DEFINITIONS, MetricDefinition
from .exporters import PrometheusExporter
from .registry import CounterMetric, DistributionMetric, MetricsRegistry


def register_default_metrics(registry: MetricsRegistry) -> MetricsRegistry:
    """Ensure all default metric definitions exist in ``registry``."""
    for definition in DEFAULT_METRIC_DEFINITIONS:
        if definition.metric_type == "counter":
            registry.counter(definition.name, description=definition.description, label_names=definition.label_names)
        elif definition.metric_type == "distribution":
            registry.distribution(
                definition.name, description=definition.description, label_names=definition.label_names
            )
        else:  # pragma: no cover - defensive
            raise ValueError(f"Unsupported metric type: {definition.metric_type}")
    return registry


metrics_registry = register_default_metrics(MetricsRegistry())

__all__ = [
    "CounterMetric",
    "DistributionMetric",
    "MetricDefinition",
    "MetricsRegistry",
    "PrometheusExporter",
    "metrics_registry",
    "register_default_metrics",
]
