"""
Pytest configuration and fixtures for venue-rebalancer tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()
