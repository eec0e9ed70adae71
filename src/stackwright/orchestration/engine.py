"""
Execution engine.

Walks a compiled plan stage by stage. Nodes inside a stage run
concurrently (bounded by a semaphore); the next stage only starts once
every node of the current one is terminal. On failure the engine either
rolls back everything it created (``rollback``) or keeps going with the
branches that do not depend on the failed node (``contain``).
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Awaitable, List, Optional, Set, TypeVar

import structlog

from stackwright.config.settings import Settings
from stackwright.core.errors import ConfigurationError
from stackwright.core.retry import RetryPolicy
from stackwright.logging import bind_context
from stackwright.orchestration.handlers import register_default_handlers
from stackwright.orchestration.plan_builder import Plan
from stackwright.orchestration.registry import HandlerContext, ResourceHandler, ResourceRegistry
from stackwright.orchestration.results import (
    ExecutionResult,
    NodeOutcome,
    NodeStatus,
    Operation,
    ResultCollector,
)
from stackwright.providers.base import BackendHandle, ResourceBackend, ResourceNotReadyError
from stackwright.resources.models import ResourceNode

logger = structlog.get_logger()

T = TypeVar("T")


class FailurePolicy(StrEnum):
    """What the engine does after a node fails during apply."""

    ROLLBACK = "rollback"
    CONTAIN = "contain"


class CancellationToken:
    """Cooperative cancellation checked at stage boundaries."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ExecutionEngine:
    """Applies and tears down plans against an injected backend."""

    def __init__(
        self,
        backend: ResourceBackend,
        *,
        registry: ResourceRegistry | None = None,
        stack: str = "default",
        concurrency_limit: int = 4,
        retry_policy: RetryPolicy | None = None,
        node_timeout: float | None = None,
        rollback_max_attempts: int = 3,
        failure_policy: FailurePolicy | str = FailurePolicy.ROLLBACK,
    ) -> None:
        if concurrency_limit < 1:
            raise ConfigurationError("concurrency_limit must be at least 1")
        self._backend = backend
        self._registry = registry or register_default_handlers(ResourceRegistry())
        self._stack = stack
        self._concurrency = concurrency_limit
        self._retry = retry_policy or RetryPolicy()
        self._node_timeout = node_timeout
        self._rollback_attempts = rollback_max_attempts
        self._policy = FailurePolicy(failure_policy)

    @classmethod
    def from_settings(
        cls,
        backend: ResourceBackend,
        settings: Settings,
        *,
        registry: ResourceRegistry | None = None,
        stack: str = "default",
    ) -> ExecutionEngine:
        return cls(
            backend,
            registry=registry,
            stack=stack,
            concurrency_limit=settings.concurrency_limit,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                multiplier=settings.backoff_multiplier,
                min_seconds=settings.backoff_min_seconds,
                max_seconds=settings.backoff_max_seconds,
            ),
            node_timeout=settings.node_timeout_seconds,
            rollback_max_attempts=settings.rollback_max_attempts,
            failure_policy=settings.failure_policy,
        )

    # === Apply ===

    async def apply(
        self,
        plan: Plan,
        previous: Optional[ExecutionResult] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Create or update every node of the plan in dependency order.

        With ``previous``, nodes that already succeeded with unchanged
        attributes are skipped without any backend call.
        """
        if plan.direction != "forward":
            plan = plan.reversed()
        graph = plan.graph
        ctx = HandlerContext(stack=self._stack, backend=self._backend, graph=graph)
        collector = ResultCollector(self._stack, "apply", self._apply_outcomes(plan, previous))
        log = bind_context(stack=self._stack, operation="apply")
        semaphore = asyncio.Semaphore(self._concurrency)
        failed: List[str] = []

        log.info("apply_started", stages=len(plan), nodes=len(graph))
        for index, stage in enumerate(plan.stages):
            if cancel is not None and cancel.cancelled:
                collector.cancel()
                log.warning("apply_cancelled", next_stage=index)
                break

            runnable: List[str] = []
            for node_id in stage:
                outcome = collector.outcome(node_id)
                if outcome.status is NodeStatus.SUCCEEDED:
                    outcome.action = "skip"
                    continue
                blocker = self._blocker(node_id, collector, plan)
                if blocker is not None:
                    collector.block(node_id, blocker, f"dependency '{blocker}' did not succeed")
                    continue
                runnable.append(node_id)

            await asyncio.gather(
                *(self._apply_node(graph.node(n), collector, ctx, semaphore) for n in runnable)
            )
            collector.stage_done()

            stage_failures = [n for n in runnable if collector.status(n) is NodeStatus.FAILED]
            stage_failures.extend(await self._verify_succeeded(plan, collector, ctx))
            failed.extend(stage_failures)
            if stage_failures and self._policy is FailurePolicy.ROLLBACK:
                log.error("stage_failed", stage=index, failed=stage_failures)
                break

        if failed and self._policy is FailurePolicy.ROLLBACK:
            for root in failed:
                for dependent in graph.transitive_dependents(root):
                    if collector.status(dependent) is NodeStatus.PENDING:
                        collector.block(dependent, root, f"dependency '{root}' failed")
            # only what this run created; resources carried over from a prior run stay
            eligible = {
                n
                for n in plan.node_ids
                if collector.outcome(n).action == "create"
                and (
                    collector.status(n) is NodeStatus.SUCCEEDED
                    or (
                        collector.status(n) is NodeStatus.FAILED
                        and collector.outcome(n).handle is not None
                    )
                )
            }
            log.warning("rollback_started", nodes=sorted(eligible))
            await self._delete_in_order(
                plan.reversed(), eligible, collector, ctx, semaphore, count_stages=False
            )

        result = collector.finalize()
        log.info(
            "apply_finished",
            success=result.success,
            cancelled=result.cancelled,
            duration_seconds=round(result.duration_seconds, 3),
            **result.counts(),
        )
        return result

    def _apply_outcomes(self, plan: Plan, previous: Optional[ExecutionResult]) -> List[NodeOutcome]:
        outcomes = []
        for node_id in plan.node_ids:
            node = plan.graph.node(node_id)
            prior = previous.outcomes.get(node_id) if previous else None
            outcome = NodeOutcome(node_id=node_id, kind=node.kind.value)
            if prior is not None:
                outcome.handle = prior.handle
                outcome.fingerprint = prior.fingerprint
                if prior.status is NodeStatus.SUCCEEDED and prior.fingerprint == node.fingerprint:
                    outcome.status = NodeStatus.SUCCEEDED
            outcomes.append(outcome)
        return outcomes

    def _blocker(self, node_id: str, collector: ResultCollector, plan: Plan) -> Optional[str]:
        """Root node that keeps ``node_id`` from running, if any."""
        for dep in sorted(plan.graph.dependencies(node_id)):
            dep_outcome = collector.outcome(dep)
            if dep_outcome.status is not NodeStatus.SUCCEEDED:
                return dep_outcome.blocked_by or dep
        return None

    async def _apply_node(
        self,
        node: ResourceNode,
        collector: ResultCollector,
        ctx: HandlerContext,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            outcome = collector.outcome(node.id)
            prior_handle = outcome.handle
            action = "update" if prior_handle is not None else "create"
            collector.start(node.id, action)
            log = logger.bind(stack=self._stack, node=node.id, kind=node.kind.value, action=action)
            attempts = 0
            try:
                handler = self._handler(node)
                async for attempt in self._retry.retrying():
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        if prior_handle is None:
                            handle = await self._timed(handler.create(node, ctx))
                        else:
                            handle = await self._timed(handler.update(node, prior_handle, ctx))
            except Exception as exc:
                # a resource that exists but never settled is still tracked
                leftover = exc.handle if isinstance(exc, ResourceNotReadyError) else None
                collector.fail(node.id, exc, attempts, leftover)
                log.error("node_failed", error=str(exc), error_type=type(exc).__name__, attempts=attempts)
                return
            collector.succeed(node.id, handle, node.fingerprint, attempts)
            log.info("node_succeeded", attempts=attempts)

    async def _verify_succeeded(
        self, plan: Plan, collector: ResultCollector, ctx: HandlerContext
    ) -> List[str]:
        """Fail succeeded nodes whose handler reports they broke since."""
        broken: List[str] = []
        for node_id in plan.node_ids:
            if collector.status(node_id) is not NodeStatus.SUCCEEDED:
                continue
            node = plan.graph.node(node_id)
            try:
                await self._handler(node).verify(node, ctx)
            except Exception as exc:
                collector.fail(node_id, exc, collector.outcome(node_id).attempts)
                logger.error(
                    "node_broken",
                    stack=self._stack,
                    node=node_id,
                    kind=node.kind.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                broken.append(node_id)
        return broken

    # === Teardown ===

    async def teardown(
        self,
        plan: Plan,
        previous: Optional[ExecutionResult] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Delete every present node in reverse dependency order.

        Without ``previous`` every node is assumed present.
        """
        reverse = plan if plan.direction == "reverse" else plan.reversed()
        ctx = HandlerContext(stack=self._stack, backend=self._backend, graph=plan.graph)
        collector = ResultCollector(
            self._stack, "teardown", self._teardown_outcomes(reverse, previous)
        )
        eligible = {
            n
            for n in reverse.node_ids
            if collector.status(n) in (NodeStatus.SUCCEEDED, NodeStatus.FAILED)
        }
        log = bind_context(stack=self._stack, operation="teardown")
        log.info("teardown_started", nodes=sorted(eligible))

        await self._delete_in_order(
            reverse, eligible, collector, ctx, asyncio.Semaphore(self._concurrency), cancel
        )

        result = collector.finalize()
        log.info(
            "teardown_finished",
            success=result.success,
            duration_seconds=round(result.duration_seconds, 3),
            **result.counts(),
        )
        return result

    def _teardown_outcomes(
        self, plan: Plan, previous: Optional[ExecutionResult]
    ) -> List[NodeOutcome]:
        outcomes = []
        for node_id in plan.node_ids:
            kind = plan.graph.node(node_id).kind.value
            prior = previous.outcomes.get(node_id) if previous else None
            if previous is None:
                outcomes.append(NodeOutcome(node_id, kind, status=NodeStatus.SUCCEEDED))
            elif prior is None:
                outcomes.append(NodeOutcome(node_id, kind))
            else:
                outcomes.append(
                    NodeOutcome(
                        node_id=node_id,
                        kind=kind,
                        status=prior.status,
                        action=prior.action,
                        handle=prior.handle,
                        fingerprint=prior.fingerprint,
                    )
                )
        return outcomes

    async def _delete_in_order(
        self,
        reverse: Plan,
        eligible: Set[str],
        collector: ResultCollector,
        ctx: HandlerContext,
        semaphore: asyncio.Semaphore,
        cancel: Optional[CancellationToken] = None,
        *,
        count_stages: bool = True,
    ) -> None:
        """Delete ``eligible`` nodes stage by stage along a reversed plan.

        A node whose dependent could not be deleted is left in place.
        """
        graph = reverse.graph
        stuck: Set[str] = set()

        for stage in reverse.stages:
            if cancel is not None and cancel.cancelled:
                collector.cancel()
                break
            runnable: List[str] = []
            for node_id in stage:
                if node_id not in eligible:
                    continue
                holders = sorted(graph.dependents(node_id) & stuck)
                if holders:
                    collector.block(node_id, holders[0], f"still required by '{holders[0]}'")
                    stuck.add(node_id)
                    continue
                runnable.append(node_id)

            deleted = await asyncio.gather(
                *(self._delete_node(graph.node(n), collector, ctx, semaphore) for n in runnable)
            )
            if count_stages:
                collector.stage_done()
            stuck.update(n for n, ok in zip(runnable, deleted) if not ok)

    async def _delete_node(
        self,
        node: ResourceNode,
        collector: ResultCollector,
        ctx: HandlerContext,
        semaphore: asyncio.Semaphore,
    ) -> bool:
        async with semaphore:
            outcome = collector.outcome(node.id)
            handle = outcome.handle or BackendHandle.for_node(node)
            log = logger.bind(stack=self._stack, node=node.id, kind=node.kind.value, action="delete")
            attempts = 0
            try:
                handler = self._handler(node)
                async for attempt in self._retry.retrying(attempts=self._rollback_attempts):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        await self._timed(handler.delete(node, handle, ctx))
            except Exception as exc:
                message = f"delete failed: {exc}"
                if outcome.error:
                    message = f"{outcome.error}; {message}"
                collector.fail(node.id, message, attempts)
                log.error("node_delete_failed", error=str(exc), attempts=attempts)
                return False
            if outcome.status is NodeStatus.FAILED and collector.result.operation == "apply":
                # the failure stays reported; only its leftover resource is gone
                collector.release(node.id)
            else:
                collector.roll_back(node.id, attempts)
            log.info("node_deleted", attempts=attempts)
            return True

    # === Helpers ===

    def _handler(self, node: ResourceNode) -> ResourceHandler:
        handler = self._registry.get(node.kind)
        if handler is None:
            raise ConfigurationError(
                f"No handler registered for kind '{node.kind.value}'",
                {"node": node.id},
            )
        return handler

    async def _timed(self, call: Awaitable[T]) -> T:
        if self._node_timeout is None:
            return await call
        return await asyncio.wait_for(call, self._node_timeout)


async def run_operation(
    engine: ExecutionEngine,
    operation: Operation,
    plan: Plan,
    previous: Optional[ExecutionResult] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExecutionResult:
    if operation == "apply":
        return await engine.apply(plan, previous, cancel)
    return await engine.teardown(plan, previous, cancel)
