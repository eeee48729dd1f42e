"""Prometheus metrics for configuration sync."""

from prometheus_client import Counter, Gauge, Histogram

sync_cycles_total = Counter(
    "configsync_cycles_total",
    "Sync cycles completed, by outcome",
    ["outcome"],
)

sync_cycle_duration = Histogram(
    "configsync_cycle_duration_seconds",
    "Duration of sync cycles",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

object_applies_total = Counter(
    "configsync_object_applies_total",
    "Object apply attempts, by result",
    ["result"],
)

drift_detected_total = Counter(
    "configsync_drift_detected_total",
    "Drifted objects detected, by drift type",
    ["type"],
)

remediations_total = Counter(
    "configsync_remediations_total",
    "Drift remediation applies, by result",
    ["result"],
)

targets_managed = Gauge(
    "configsync_targets",
    "Number of targets managed by the scheduler",
)
