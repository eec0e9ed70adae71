"""Tests for resource handlers, including the service registration binding."""

import asyncio

import pytest
from conftest import node
from stackwright.core.errors import BackendError, BindingConsistencyError, ValidationError
from stackwright.core.retry import RetryPolicy
from stackwright.discovery.binder import ServiceDiscoveryBinder
from stackwright.discovery.dns import InMemoryDnsRegistry
from stackwright.discovery.models import BindingState, RecordHandle
from stackwright.orchestration.engine import ExecutionEngine
from stackwright.orchestration.graph import build
from stackwright.orchestration.handlers import (
    BackendHandler,
    ServiceRegistrationHandler,
    record_for,
    register_default_handlers,
)
from stackwright.orchestration.plan_builder import compile_plan
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.results import NodeStatus
from stackwright.providers.memory import InMemoryBackend
from stackwright.resources.models import Endpoint, ResourceKind
from stackwright.resources.templates import render_template

RECORD = RecordHandle("internal.local", "orders")


def template_nodes(**overrides):
    params = {"service_name": "orders", "namespace": "internal.local"}
    params.update(overrides)
    return render_template("ecs-cloudmap", params)


class Runtime:
    """Backend, DNS and binder wired into an engine like the CLI does."""

    def __init__(self, backend=None, dns=None, binding_timeout=1.0):
        policy = RetryPolicy.immediate(max_attempts=3)
        self.backend = backend or InMemoryBackend()
        self.dns = dns or InMemoryDnsRegistry()
        self.binder = ServiceDiscoveryBinder(self.dns, retry_policy=policy)
        registry = register_default_handlers(
            ResourceRegistry(),
            binder=self.binder,
            endpoint_source=self.backend.endpoint_source,
            binding_timeout=binding_timeout,
        )
        self.engine = ExecutionEngine(
            self.backend, registry=registry, stack="orders", retry_policy=policy
        )

    def resolve(self):
        return self.dns.resolve("internal.local", "orders")


async def eventually(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


class TestRecordFor:
    def test_namespace_from_referenced_node(self):
        graph = build(template_nodes())
        assert record_for(graph.node("service"), graph) == RECORD

    def test_namespace_attribute_fallback(self):
        svc = node("svc", ResourceKind.SERVICE_REGISTRATION, namespace="corp.local")
        graph = build([svc])
        record = record_for(svc, graph)
        assert record.fqdn == "svc.corp.local"
        assert record.record_type == "A"

    def test_missing_namespace(self):
        svc = node("svc", ResourceKind.SERVICE_REGISTRATION)
        with pytest.raises(ValidationError, match="does not reference a namespace"):
            record_for(svc, build([svc]))


def test_default_registry_without_binder():
    registry = register_default_handlers(ResourceRegistry())
    assert isinstance(registry.get(ResourceKind.SERVICE_REGISTRATION), BackendHandler)
    assert not isinstance(
        registry.get(ResourceKind.SERVICE_REGISTRATION), ServiceRegistrationHandler
    )


class TestServiceRegistration:
    @pytest.mark.asyncio
    async def test_apply_binds_record_to_task(self):
        runtime = Runtime()

        result = await runtime.engine.apply(compile_plan(template_nodes(desired_count=2)))

        assert result.success
        assert len(runtime.resolve()) == 2
        assert {e.port for e in runtime.resolve()} == {80}
        await runtime.binder.close()

    @pytest.mark.asyncio
    async def test_update_follows_relaunched_tasks(self):
        runtime = Runtime()
        first = await runtime.engine.apply(compile_plan(template_nodes()))
        old = runtime.resolve()

        second = await runtime.engine.apply(
            compile_plan(template_nodes(desired_count=3)), previous=first
        )

        assert second.outcomes["service"].action == "update"
        assert second.outcomes["container"].action == "skip"
        await eventually(lambda: len(runtime.resolve()) == 3)
        assert not old & runtime.resolve()
        assert all(count > 0 for _, count in runtime.dns.observations)
        await runtime.binder.close()

    @pytest.mark.asyncio
    async def test_teardown_removes_record_first(self):
        runtime = Runtime()
        plan = compile_plan(template_nodes())
        applied = await runtime.engine.apply(plan)

        result = await runtime.engine.teardown(plan, previous=applied)

        assert result.success
        assert not runtime.dns.has_record(RECORD)
        assert runtime.backend.calls_for("delete")[0] == "service"

    @pytest.mark.asyncio
    async def test_teardown_from_fresh_process(self):
        first = Runtime()
        plan = compile_plan(template_nodes())
        await first.engine.apply(plan)
        await first.binder.close()

        second = Runtime(backend=first.backend, dns=first.dns)
        result = await second.engine.teardown(plan)

        assert result.success
        assert not first.dns.has_record(RECORD)

    @pytest.mark.asyncio
    async def test_unbindable_service_fails_and_cleans_up(self):
        runtime = Runtime(binding_timeout=0.05)

        result = await runtime.engine.apply(compile_plan(template_nodes(desired_count=0)))

        assert result.status_of("service") is NodeStatus.FAILED
        assert "No endpoints attached" in result.outcomes["service"].error
        assert result.outcomes["service"].attempts == 1
        assert not runtime.dns.has_record(RECORD)
        assert not runtime.backend.exists("service")
        assert result.status_of("container") is NodeStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_binding_broken_after_bind_fails_service(self):
        runtime = Runtime()
        runtime.backend.delay("create", "dep", 0.2)
        nodes = [
            node("ns", ResourceKind.NAMESPACE, name="internal.local"),
            node("orders", ResourceKind.SERVICE_REGISTRATION, "ns", desired_count=1),
            node("dep", ResourceKind.SECURITY_RULE, "orders"),
        ]
        applying = asyncio.create_task(runtime.engine.apply(compile_plan(nodes)))

        def bound():
            binding = runtime.binder.get("orders")
            return binding is not None and binding.state is BindingState.BOUND

        await eventually(bound)
        runtime.dns.fail_next("add_endpoint", BackendError.denied())
        runtime.backend.endpoint_source.publish("orders", [Endpoint("10.9.9.9", 80)])
        result = await applying

        assert result.status_of("orders") is NodeStatus.FAILED
        assert "rejected" in result.outcomes["orders"].error
        assert result.outcomes["orders"].handle is None
        assert result.status_of("dep") is NodeStatus.ROLLED_BACK
        assert result.status_of("ns") is NodeStatus.ROLLED_BACK
        assert not runtime.backend.exists("orders")
        assert not runtime.dns.has_record(RECORD)
        assert runtime.binder.get("orders") is None
        assert not result.success


class TestVerify:
    @pytest.mark.asyncio
    async def test_plain_resource_has_nothing_to_verify(self):
        await BackendHandler().verify(node("vpc", ResourceKind.NETWORK), None)

    @pytest.mark.asyncio
    async def test_unregistered_service_passes(self):
        runtime = Runtime()
        handler = ServiceRegistrationHandler(runtime.binder, runtime.backend.endpoint_source)

        await handler.verify(node("orders", ResourceKind.SERVICE_REGISTRATION), None)

    @pytest.mark.asyncio
    async def test_inconsistent_binding_raises(self):
        runtime = Runtime()
        await runtime.engine.apply(compile_plan(template_nodes()))
        handler = ServiceRegistrationHandler(runtime.binder, runtime.backend.endpoint_source)
        runtime.dns.fail_next("add_endpoint", BackendError.denied())

        await runtime.binder.submit("service", [Endpoint("10.9.9.9", 80)])

        with pytest.raises(BindingConsistencyError, match="rejected"):
            await handler.verify(node("service", ResourceKind.SERVICE_REGISTRATION), None)
        await runtime.binder.close()
