"""Root test configuration."""

import logging

import pytest
import structlog
from stackwright.core.retry import RetryPolicy
from stackwright.providers.memory import InMemoryBackend
from stackwright.resources.models import ResourceKind, ResourceNode


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def node(node_id, kind, *refs, **attributes):
    """Shorthand for declaring a resource node in tests."""
    return ResourceNode(node_id, kind, attributes, frozenset(refs))


@pytest.fixture
def scenario_nodes():
    """Network N, Role R, TaskTemplate T->R, Container C->T, Service S->C."""
    return [
        node("N", ResourceKind.NETWORK),
        node("R", ResourceKind.ROLE),
        node("T", ResourceKind.TASK_TEMPLATE, "R"),
        node("C", ResourceKind.CONTAINER_SPEC, "T"),
        node("S", ResourceKind.SERVICE_REGISTRATION, "C"),
    ]


@pytest.fixture
def fast_retry():
    """Retry policy without backoff sleeps."""
    return RetryPolicy.immediate(max_attempts=3)


@pytest.fixture
def backend():
    return InMemoryBackend()
