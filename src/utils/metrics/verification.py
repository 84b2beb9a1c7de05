"""
Metrics for inline verification passes.

Tracks passes, mismatched rows, rows compared and status events so a
stalled or failing migration is visible before cutover is attempted.
"""

import logging
from typing import Callable, Optional, TypeVar

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_or_create_metric(
    metric_factory: Callable[[], T],
    metric_name: str,
    registry: CollectorRegistry = REGISTRY,
) -> T:
    """
    Create a metric, or return the one already registered under that name.

    Several verifiers in one process (and every test) share the default
    registry, which rejects duplicate registrations with ValueError.

    Args:
        metric_factory: Callable that creates the metric (e.g., lambda: Counter(...))
        metric_name: Name of the metric for lookup if already registered
        registry: Prometheus registry to use (default: global REGISTRY)

    Returns:
        The metric instance (either newly created or existing)
    """
    try:
        return metric_factory()
    except ValueError:
        existing = registry._names_to_collectors.get(metric_name)
        if existing is not None:
            return existing
        raise


class VerificationMetrics:
    """
    Metrics for verification passes

    Tracks pass outcomes, mismatches, compared rows and emitted status events.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize verification metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY
        registry = self.registry

        self.passes_total = get_or_create_metric(
            lambda: Counter(
                "verification_passes_total",
                "Total number of verification passes",
                ["table_name", "scope", "outcome"],
                registry=registry,
            ),
            "verification_passes_total",
            registry,
        )

        self.pass_duration_seconds = get_or_create_metric(
            lambda: Histogram(
                "verification_pass_duration_seconds",
                "Duration of verification passes in seconds",
                ["scope"],
                buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300),
                registry=registry,
            ),
            "verification_pass_duration_seconds",
            registry,
        )

        self.mismatched_rows_total = get_or_create_metric(
            lambda: Counter(
                "verification_mismatched_rows_total",
                "Total number of rows whose fingerprints did not match",
                ["table_name", "kind"],
                registry=registry,
            ),
            "verification_mismatched_rows_total",
            registry,
        )

        self.rows_compared_total = get_or_create_metric(
            lambda: Counter(
                "verification_rows_compared_total",
                "Total number of primary keys compared",
                ["table_name"],
                registry=registry,
            ),
            "verification_rows_compared_total",
            registry,
        )

        self.compare_seconds = get_or_create_metric(
            lambda: Histogram(
                "verification_compare_seconds",
                "Time to fingerprint and compare one batch",
                buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
                registry=registry,
            ),
            "verification_compare_seconds",
            registry,
        )

        self.deferred_mismatches = get_or_create_metric(
            lambda: Gauge(
                "verification_deferred_mismatches",
                "Replicated-row mismatches waiting for the cutover verdict",
                ["table_name"],
                registry=registry,
            ),
            "verification_deferred_mismatches",
            registry,
        )

        self.status_events_total = get_or_create_metric(
            lambda: Counter(
                "verification_status_events_total",
                "Status events emitted by the verifier",
                ["kind"],
                registry=registry,
            ),
            "verification_status_events_total",
            registry,
        )

    def record_pass(self, table_name: str, scope: str, passed: bool, duration: float) -> None:
        """
        Record a completed verification pass

        Args:
            table_name: Table examined by the pass
            scope: 'incremental' or 'cutover'
            passed: Whether the pass found no mismatches
            duration: Pass duration in seconds
        """
        outcome = "pass" if passed else "fail"
        self.passes_total.labels(table_name=table_name, scope=scope, outcome=outcome).inc()
        self.pass_duration_seconds.labels(scope=scope).observe(duration)

        logger.debug(
            f"Recorded {scope} pass for {table_name}: outcome={outcome}, duration={duration:.3f}s"
        )

    def record_mismatch(self, table_name: str, kind: str, count: int = 1) -> None:
        self.mismatched_rows_total.labels(table_name=table_name, kind=kind).inc(count)

    def record_rows_compared(self, table_name: str, count: int) -> None:
        self.rows_compared_total.labels(table_name=table_name).inc(count)

    def set_deferred(self, table_name: str, count: int) -> None:
        self.deferred_mismatches.labels(table_name=table_name).set(count)

    def record_status_event(self, kind: str) -> None:
        self.status_events_total.labels(kind=kind).inc()
