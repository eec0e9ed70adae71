"""Tests for the service discovery binder state machine."""

import asyncio

import pytest
from stackwright.core.errors import BackendError, BindingConsistencyError, InvalidTransitionError
from stackwright.core.retry import RetryPolicy
from stackwright.discovery.binder import ServiceDiscoveryBinder
from stackwright.discovery.dns import InMemoryDnsRegistry
from stackwright.discovery.endpoints import InMemoryEndpointSource
from stackwright.discovery.models import BindingState, RecordHandle, ServiceBinding
from stackwright.resources.models import Endpoint

E1 = Endpoint("10.0.0.1", 80)
E2 = Endpoint("10.0.0.2", 80)
E3 = Endpoint("10.0.0.3", 80)
E4 = Endpoint("10.0.0.4", 80)

RECORD = RecordHandle("internal.local", "orders")


async def eventually(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


def make_binder(dns, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy.immediate(max_attempts=3))
    return ServiceDiscoveryBinder(dns, **kwargs)


async def register(binder, registration_id="svc", task="task-1"):
    return await binder.register(
        registration_id,
        namespace="internal.local",
        name="orders",
        record_type="A",
        target_task_id=task,
    )


def dns_ops(dns):
    return [op for op, _ in dns.calls]


@pytest.fixture
def dns():
    return InMemoryDnsRegistry()


@pytest.fixture
def source():
    return InMemoryEndpointSource()


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_creates_empty_record(self, dns):
        binder = make_binder(dns)

        binding = await register(binder)

        assert binding.state is BindingState.REGISTERING
        assert binding.record == RECORD
        assert dns.has_record(RECORD)
        assert dns.resolve("internal.local", "orders") == frozenset()

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, dns):
        binder = make_binder(dns)

        first = await register(binder)
        second = await register(binder)

        assert first is second
        assert dns_ops(dns).count("upsert_record") == 1

    @pytest.mark.asyncio
    async def test_register_failure_drops_binding(self, dns):
        binder = make_binder(dns)
        dns.fail_next("upsert_record", BackendError.denied())

        with pytest.raises(BackendError):
            await register(binder)
        assert binder.get("svc") is None


class TestBind:
    @pytest.mark.asyncio
    async def test_bind_attaches_live_endpoints(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1, E2])
        await register(binder)

        binding = await binder.bind("svc", source, timeout=1)

        assert binding.state is BindingState.BOUND
        assert binding.current_endpoints == {E1, E2}
        assert dns.resolve("internal.local", "orders") == {E1, E2}
        await binder.close()

    @pytest.mark.asyncio
    async def test_bind_waits_for_first_endpoint(self, dns, source):
        binder = make_binder(dns)
        await register(binder)

        pending = asyncio.create_task(binder.bind("svc", source, timeout=1))
        await asyncio.sleep(0.01)
        assert not pending.done()
        source.publish("task-1", [E1])
        binding = await pending

        assert binding.state is BindingState.BOUND
        await binder.close()

    @pytest.mark.asyncio
    async def test_empty_task_stays_registering(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [])
        await register(binder)

        with pytest.raises(BindingConsistencyError, match="No endpoints attached"):
            await binder.bind("svc", source, timeout=0.05)
        assert binder.get("svc").state is BindingState.REGISTERING
        await binder.close()

    @pytest.mark.asyncio
    async def test_allow_empty_binds_immediately(self, dns, source):
        binder = make_binder(dns, allow_empty=True)
        await register(binder)

        binding = await binder.bind("svc", source, timeout=0.05)

        assert binding.state is BindingState.BOUND
        assert dns.resolve("internal.local", "orders") == frozenset()
        await binder.close()

    @pytest.mark.asyncio
    async def test_bind_unknown_registration(self, dns, source):
        binder = make_binder(dns)
        with pytest.raises(BindingConsistencyError):
            await binder.bind("missing", source, timeout=0.05)


class TestUpdates:
    @pytest.mark.asyncio
    async def test_replacement_adds_before_removing(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        dns.calls.clear()

        await binder.submit("svc", [E2])
        await binder.wait_idle("svc")

        assert dns_ops(dns) == ["add_endpoint", "remove_endpoint"]
        assert dns.resolve("internal.local", "orders") == {E2}
        assert binder.get("svc").state is BindingState.BOUND
        await binder.close()

    @pytest.mark.asyncio
    async def test_changes_converge_without_empty_record(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)

        for endpoints in ([E1, E2], [E2, E3], [E3], [E3, E4], [E1]):
            await binder.submit("svc", endpoints)
        await binder.wait_idle("svc")

        binding = binder.get("svc")
        assert binding.current_endpoints == {E1}
        assert binding.in_sync
        assert dns.resolve("internal.local", "orders") == {E1}
        assert all(count > 0 for _, count in dns.observations)
        await binder.close()

    @pytest.mark.asyncio
    async def test_task_notifications_flow_through(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)

        source.publish("task-1", [E2, E3])
        await eventually(lambda: dns.resolve("internal.local", "orders") == {E2, E3})

        assert all(count > 0 for _, count in dns.observations)
        await binder.close()

    @pytest.mark.asyncio
    async def test_only_incremental_calls(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1, E2])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        dns.calls.clear()

        await binder.submit("svc", [E1, E2, E3])
        await binder.wait_idle("svc")

        assert dns.calls == [("add_endpoint", "orders.internal.local")]
        await binder.close()


class TestErrors:
    @pytest.mark.asyncio
    async def test_ambiguous_error_rereads_record(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        # the call lands but every attempt reports a timeout
        dns.fail_next("add_endpoint", BackendError.throttled(), times=3, applied=True)
        dns.calls.clear()

        await binder.submit("svc", [E1, E2])
        await binder.wait_idle("svc")

        binding = binder.get("svc")
        assert "describe_record" in dns_ops(dns)
        assert binding.current_endpoints == {E1, E2}
        assert binding.error is None
        assert dns_ops(dns).count("add_endpoint") == 3
        binder.raise_for_failures()
        await binder.close()

    @pytest.mark.asyncio
    async def test_reread_repairs_lost_update(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        dns.fail_next("add_endpoint", BackendError.throttled(), times=3)

        await binder.submit("svc", [E1, E2])
        await binder.wait_idle("svc")

        assert dns.resolve("internal.local", "orders") == {E1, E2}
        assert binder.get("svc").in_sync
        await binder.close()

    @pytest.mark.asyncio
    async def test_permanent_error_flags_binding(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        dns.fail_next("add_endpoint", BackendError.denied())

        await binder.submit("svc", [E1, E2])
        await binder.wait_idle("svc")

        binding = binder.get("svc")
        assert "rejected" in binding.error
        assert binding.state is BindingState.BOUND
        with pytest.raises(BindingConsistencyError):
            binder.raise_for_failures()
        await binder.close()

    @pytest.mark.asyncio
    async def test_missing_record_flags_binding(self, dns):
        binder = make_binder(dns)
        binding = await register(binder)
        binding.record = None

        await binder.submit("svc", [E1])
        await binder.wait_idle("svc")

        assert "no DNS record" in binding.error
        assert binding.state is BindingState.REGISTERING
        assert dns_ops(dns) == ["upsert_record"]
        await binder.close()

    @pytest.mark.asyncio
    async def test_no_convergence_fails_bind(self, dns, source):
        binder = make_binder(dns, max_reconcile_rounds=2)
        source.publish("task-1", [E1])
        await register(binder)
        dns.fail_next("add_endpoint", BackendError.throttled(), times=6)

        with pytest.raises(BindingConsistencyError, match="did not converge"):
            await binder.bind("svc", source, timeout=1)
        await binder.close()

    @pytest.mark.asyncio
    async def test_stream_interruption_resubscribes(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)

        source.interrupt("task-1")
        await eventually(lambda: source.subscriber_count("task-1") == 1)
        source.publish("task-1", [E2])
        await eventually(lambda: dns.resolve("internal.local", "orders") == {E2})

        assert binder.get("svc").error is None
        await binder.close()

    @pytest.mark.asyncio
    async def test_stream_lost_after_restarts(self, dns, source):
        binder = make_binder(dns, max_stream_restarts=0)
        source.publish("task-1", [E1])
        await register(binder)
        await binder.bind("svc", source, timeout=1)

        source.interrupt("task-1")
        await eventually(lambda: binder.get("svc").error is not None)

        with pytest.raises(BindingConsistencyError, match="lost"):
            binder.raise_for_failures()
        await binder.close()


class TestDeregister:
    @pytest.mark.asyncio
    async def test_deregister_removes_endpoints_then_record(self, dns, source):
        binder = make_binder(dns)
        source.publish("task-1", [E1, E2])
        await register(binder)
        await binder.bind("svc", source, timeout=1)
        dns.calls.clear()

        await binder.deregister("svc")

        assert dns_ops(dns) == [
            "describe_record",
            "remove_endpoint",
            "remove_endpoint",
            "delete_record",
        ]
        assert not dns.has_record(RECORD)
        assert binder.get("svc") is None
        assert source.subscriber_count("task-1") == 0

    @pytest.mark.asyncio
    async def test_deregister_adopts_unknown_record(self, dns, source):
        owner = make_binder(dns)
        source.publish("task-1", [E1])
        await register(owner)
        await owner.bind("svc", source, timeout=1)
        await owner.close()

        fresh = make_binder(dns)
        await fresh.deregister("svc", record=RECORD)

        assert not dns.has_record(RECORD)

    @pytest.mark.asyncio
    async def test_deregister_unknown_without_record_is_noop(self, dns):
        binder = make_binder(dns)
        await binder.deregister("svc")
        assert dns.calls == []

    @pytest.mark.asyncio
    async def test_deregister_while_registering(self, dns):
        binder = make_binder(dns)
        await register(binder)

        await binder.deregister("svc")

        assert not dns.has_record(RECORD)


def test_binding_rejects_illegal_transition():
    binding = ServiceBinding("svc", "ns", "name", "A", "task")
    with pytest.raises(InvalidTransitionError):
        binding.transition(BindingState.BOUND)
    binding.transition(BindingState.REGISTERING)
    binding.transition(BindingState.BOUND)
    assert binding.to_dict()["state"] == "bound"
