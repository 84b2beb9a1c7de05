"""
Prometheus metrics for the inline verifier

Usage:
    from src.utils.metrics import VerificationMetrics

    metrics = VerificationMetrics()
    metrics.record_pass("gftest.users", scope="incremental", passed=True, duration=0.02)
    metrics.record_mismatch("gftest.users", kind="MODIFIED")
"""

from .verification import VerificationMetrics, get_or_create_metric

__all__ = [
    "VerificationMetrics",
    "get_or_create_metric",
]
