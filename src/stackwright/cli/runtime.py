"""Wiring shared by the CLI commands."""

from __future__ import annotations

from dataclasses import dataclass

from stackwright.config.settings import Settings
from stackwright.core.retry import RetryPolicy
from stackwright.discovery import InMemoryDnsRegistry, ServiceDiscoveryBinder
from stackwright.orchestration import (
    ExecutionEngine,
    ResourceRegistry,
    register_default_handlers,
)
from stackwright.providers import ResourceBackend, create_backend


@dataclass
class Runtime:
    """Backend, binder and engine for one command invocation."""

    backend: ResourceBackend
    binder: ServiceDiscoveryBinder
    engine: ExecutionEngine

    async def close(self) -> None:
        await self.binder.close()


def build_runtime(
    settings: Settings,
    *,
    stack: str,
    backend_name: str | None = None,
    concurrency: int | None = None,
    policy: str | None = None,
) -> Runtime:
    backend = create_backend(backend_name or settings.backend)
    retry_policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        multiplier=settings.backoff_multiplier,
        min_seconds=settings.backoff_min_seconds,
        max_seconds=settings.backoff_max_seconds,
    )
    binder = ServiceDiscoveryBinder(
        InMemoryDnsRegistry(),
        allow_empty=settings.allow_empty_binding,
        retry_policy=retry_policy,
        max_reconcile_rounds=settings.binding_max_reconcile_rounds,
    )
    registry = register_default_handlers(
        ResourceRegistry(),
        binder=binder,
        endpoint_source=getattr(backend, "endpoint_source", None),
        binding_timeout=settings.binding_timeout_seconds,
    )
    engine = ExecutionEngine(
        backend,
        registry=registry,
        stack=stack,
        concurrency_limit=concurrency or settings.concurrency_limit,
        retry_policy=retry_policy,
        node_timeout=settings.node_timeout_seconds,
        rollback_max_attempts=settings.rollback_max_attempts,
        failure_policy=policy or settings.failure_policy,
    )
    return Runtime(backend=backend, binder=binder, engine=engine)
