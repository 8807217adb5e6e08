"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="tickets_created_total",
        metric_type="counter",
        description="Total number of tickets opened.",
    ),
    MetricDefinition(
        name="ticket_status_transitions_total",
        metric_type="counter",
        description="Ticket status transitions applied by the lifecycle service.",
        label_names=("to_status",),
    ),
    MetricDefinition(
        name="sla_status_changes_total",
        metric_type="counter",
        description="Changes of derived SLA status, by the status entered.",
        label_names=("sla_status",),
    ),
    MetricDefinition(
        name="sla_sweep_duration_seconds",
        metric_type="distribution",
        description="Duration of SLA sweep cycles in seconds.",
    ),
    MetricDefinition(
        name="sla_sweep_failures_total",
        metric_type="counter",
        description="Tickets whose SLA re-evaluation failed during a sweep.",
    ),
    MetricDefinition(
        name="event_deliveries_total",
        metric_type="counter",
        description="Events accepted by subscriber buffers.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name="event_subscribers_dropped_total",
        metric_type="counter",
        description="Subscribers dropped after overflowing their event buffer.",
    ),
)
