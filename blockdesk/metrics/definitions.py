"""Metric definitions used across the ticket core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="ticket_reconciliations_total",
        metric_type="counter",
        description="Reconciliation passes by outcome (complete, incomplete, stale).",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name="ticket_reconciliation_duration_seconds",
        metric_type="distribution",
        description="Duration of a single reconciliation pass in seconds.",
    ),
    MetricDefinition(
        name="ticket_transitions_total",
        metric_type="counter",
        description="Write requests handled by the workflow engine.",
        label_names=("action", "outcome"),
    ),
    MetricDefinition(
        name="ticket_transition_rejections_total",
        metric_type="counter",
        description="Rejected write requests by reason.",
        label_names=("reason",),
    ),
    MetricDefinition(
        name="content_cache_hits_total",
        metric_type="counter",
        description="Content lookups served from the local cache.",
    ),
    MetricDefinition(
        name="content_cache_misses_total",
        metric_type="counter",
        description="Content lookups that could not be served, by source of the miss.",
        label_names=("source",),
    ),
    MetricDefinition(
        name="content_remote_failures_total",
        metric_type="counter",
        description="Failed calls to the remote blob store.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name="content_put_retries_total",
        metric_type="counter",
        description="Retried uploads to the remote blob store.",
    ),
    MetricDefinition(
        name="ticket_directory_upserts_total",
        metric_type="counter",
        description="Directory upserts by result (applied, discarded).",
        label_names=("result",),
    ),
)
