"""Orchestration package: dependency graph, staged plans and execution."""

from stackwright.orchestration.engine import (
    CancellationToken,
    ExecutionEngine,
    FailurePolicy,
    run_operation,
)
from stackwright.orchestration.graph import Graph, build
from stackwright.orchestration.handlers import (
    BackendHandler,
    ServiceRegistrationHandler,
    record_for,
    register_default_handlers,
)
from stackwright.orchestration.plan_builder import Plan, PlanCompiler, PlannedChange, compile_plan
from stackwright.orchestration.registry import HandlerContext, ResourceHandler, ResourceRegistry
from stackwright.orchestration.results import (
    ExecutionResult,
    NodeOutcome,
    NodeStatus,
    ResultCollector,
)

__all__ = [
    "BackendHandler",
    "CancellationToken",
    "ExecutionEngine",
    "ExecutionResult",
    "FailurePolicy",
    "Graph",
    "HandlerContext",
    "NodeOutcome",
    "NodeStatus",
    "Plan",
    "PlanCompiler",
    "PlannedChange",
    "ResourceHandler",
    "ResourceRegistry",
    "ResultCollector",
    "ServiceRegistrationHandler",
    "build",
    "compile_plan",
    "record_for",
    "register_default_handlers",
    "run_operation",
]
