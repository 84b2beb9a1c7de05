"""
Utility modules for the inline verifier

Provides:
- logging: structured logging setup
- tracing: OpenTelemetry spans
- metrics: Prometheus metrics
- retry: backoff for transient database errors
- database_types: dialect-aware quoting and placeholders
"""

__version__ = "1.0.0"
__all__ = ["logging", "tracing", "metrics", "retry", "database_types"]
