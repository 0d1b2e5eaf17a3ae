"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Generator

import pytest

# Set test environment
os.environ.setdefault("SPRINTFLOW_LOG_LEVEL", "DEBUG")
os.environ.setdefault("SPRINTFLOW_STORE_RETRY_DELAY", "0")


@pytest.fixture
def mock_settings() -> Generator:
    """Clear cached settings around a test that changes the environment."""
    from sprintflow.core.config import clear_settings_cache

    clear_settings_cache()

    yield

    clear_settings_cache()


@pytest.fixture
def fast_settings():
    """Settings where one minute of estimated work is 10ms of wall time."""
    from sprintflow.core.config import Settings

    return Settings(
        time_unit_seconds=0.01,
        timeout_multiplier=20.0,
        store_retry_delay=0.0,
        max_retries=3,
    )


@pytest.fixture
def diamond_graph():
    """A -> {B, C} -> D."""
    from sprintflow.scheduling.graph import DependencyGraph

    graph = DependencyGraph()
    graph.add_node("A", estimated_duration=5)
    graph.add_node("B", depends_on=["A"], estimated_duration=8)
    graph.add_node("C", depends_on=["A"], estimated_duration=3)
    graph.add_node("D", depends_on=["B", "C"], estimated_duration=4)
    return graph


@pytest.fixture
def worker_pool():
    """Two generalist workers."""
    from sprintflow.scheduling.workers import WorkerPool

    pool = WorkerPool()
    pool.register("worker-1", skills={"coding", "testing"})
    pool.register("worker-2", skills={"coding", "review"})
    return pool


@pytest.fixture
def knowledge_store():
    """In-memory knowledge store."""
    from sprintflow.knowledge.store import InMemoryKnowledgeStore

    return InMemoryKnowledgeStore()


@pytest.fixture
def simulated_executor():
    """Executor that succeeds immediately."""
    from sprintflow.scheduling.executor import SimulatedSprintExecutor

    return SimulatedSprintExecutor(time_scale=0.0)


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
