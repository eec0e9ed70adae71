"""Tests for resource backends and the backend registry."""

import pytest
from conftest import node
from stackwright.core.errors import BackendError, ConfigurationError
from stackwright.providers.base import BackendHandle
from stackwright.providers.memory import InMemoryBackend
from stackwright.providers.registry import (
    BackendRegistry,
    create_backend,
    list_backends,
    register_backend,
)
from stackwright.resources.models import ResourceKind


class TestInMemoryBackend:
    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, backend):
        vpc = node("vpc", ResourceKind.NETWORK, cidr="10.0.0.0/16")

        first = await backend.create(vpc)
        second = await backend.create(vpc)

        assert first == second
        assert first.resource_id.startswith("network-")
        assert backend.attributes("vpc") == {"cidr": "10.0.0.0/16"}

    @pytest.mark.asyncio
    async def test_read_reports_settling(self):
        backend = InMemoryBackend(settle_reads=1)
        handle = await backend.create(node("vpc", ResourceKind.NETWORK))

        assert (await backend.read(handle)).status == "pending"
        state = await backend.read(handle)
        assert state.ready

    @pytest.mark.asyncio
    async def test_read_missing(self, backend):
        state = await backend.read(BackendHandle("ghost", "Network"))
        assert state.status == "missing"
        assert not state.ready

    @pytest.mark.asyncio
    async def test_update_adopts_unknown_handle(self, backend):
        await backend.update(BackendHandle("vpc", "Network", "network-1"), {"cidr": "x"})
        assert backend.exists("vpc")
        assert backend.attributes("vpc") == {"cidr": "x"}

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, backend):
        handle = await backend.create(node("vpc", ResourceKind.NETWORK))
        await backend.delete(handle)
        await backend.delete(handle)
        assert not backend.exists("vpc")

    @pytest.mark.asyncio
    async def test_fault_injection(self, backend):
        vpc = node("vpc", ResourceKind.NETWORK)
        backend.fail_next("create", "vpc", BackendError.throttled(), times=2)

        for _ in range(2):
            with pytest.raises(BackendError) as exc_info:
                await backend.create(vpc)
            assert exc_info.value.transient
        await backend.create(vpc)

        assert backend.calls_for("create") == ["vpc", "vpc", "vpc"]

    @pytest.mark.asyncio
    async def test_service_publishes_task_endpoints(self, backend):
        service = node(
            "svc",
            ResourceKind.SERVICE_REGISTRATION,
            "task",
            target="task",
            desired_count=2,
            port=8080,
        )

        await backend.create(service)
        latest = backend.endpoint_source.latest("task")
        assert len(latest.endpoints) == 2
        assert {e.port for e in latest.endpoints} == {8080}

        await backend.delete(BackendHandle.for_node(service))
        assert backend.endpoint_source.latest("task").endpoints == frozenset()

    @pytest.mark.asyncio
    async def test_service_update_relaunches(self, backend):
        service = node("svc", ResourceKind.SERVICE_REGISTRATION, desired_count=1)
        handle = await backend.create(service)
        before = backend.endpoint_source.latest("svc").endpoints

        await backend.update(handle, {"desired_count": 1})

        after = backend.endpoint_source.latest("svc").endpoints
        assert len(after) == 1
        assert before != after


class TestBackendRegistry:
    def test_memory_is_builtin(self):
        assert "memory" in [spec.name for spec in list_backends()]
        assert isinstance(create_backend("memory"), InMemoryBackend)

    def test_create_passes_kwargs(self):
        backend = create_backend("memory", settle_reads=3)
        assert backend._settle_reads == 3

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="not registered"):
            create_backend("nope")

    def test_register_custom(self):
        registry = BackendRegistry()
        registry.register("fake", lambda: "fake-backend", description="test")

        assert registry.create("fake") == "fake-backend"
        assert registry.list()[0].description == "test"

    def test_register_requires_name(self):
        with pytest.raises(ValueError):
            BackendRegistry().register("", InMemoryBackend)

    def test_module_level_register(self):
        register_backend("memory-alias", InMemoryBackend)
        assert isinstance(create_backend("memory-alias"), InMemoryBackend)
