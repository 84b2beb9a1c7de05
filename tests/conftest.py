"""
Pytest configuration and fixtures for inline verifier tests.
Provides shared fixtures for schemas, metrics and the in-memory migration harness.
"""

from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from src.utils.metrics import VerificationMetrics
from src.verification.schema import build_table_schema
from tests.fakes import MigrationHarness

DEFAULT_TABLE = "gftest.test_table_1"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "property: mark test as property-based test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Get project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def metrics() -> VerificationMetrics:
    """Verification metrics on a private registry."""
    return VerificationMetrics(registry=CollectorRegistry())


@pytest.fixture
def table_schema():
    """The single-key test table: id plus one utf8mb4 text column."""
    columns = [("id", None, None), ("data", "utf8mb4", "utf8mb4_unicode_ci")]
    return build_table_schema(DEFAULT_TABLE, "id", columns, columns)


@pytest.fixture
def make_harness():
    """Factory for MigrationHarness instances, closed after the test."""
    harnesses = []

    def factory(*args, **kwargs) -> MigrationHarness:
        harness = MigrationHarness(*args, **kwargs)
        harnesses.append(harness)
        return harness

    yield factory

    for harness in harnesses:
        harness.close()
