"""Built-in resource handlers."""

from __future__ import annotations

from typing import Tuple

import structlog

from stackwright.core.errors import BindingConsistencyError, ValidationError
from stackwright.discovery.binder import ServiceDiscoveryBinder
from stackwright.discovery.endpoints import EndpointSource
from stackwright.discovery.models import RecordHandle
from stackwright.orchestration.graph import Graph
from stackwright.orchestration.registry import HandlerContext, ResourceRegistry
from stackwright.providers.base import BackendHandle, ResourceNotReadyError
from stackwright.resources.models import ResourceKind, ResourceNode, target_task_id

logger = structlog.get_logger()


async def _await_stable(handle: BackendHandle, ctx: HandlerContext) -> None:
    """Raise a transient error until the backend reports the resource ready."""
    state = await ctx.backend.read(handle)
    if state.status == "missing":
        raise ResourceNotReadyError(f"Resource for node '{handle.node_id}' not visible yet", handle)
    if not state.ready:
        raise ResourceNotReadyError(f"Resource for node '{handle.node_id}' still settling", handle)


class BackendHandler:
    """Passes nodes straight through to the resource backend."""

    kinds: Tuple[ResourceKind, ...] = tuple(ResourceKind)

    async def create(self, node: ResourceNode, ctx: HandlerContext) -> BackendHandle:
        handle = await ctx.backend.create(node)
        await _await_stable(handle, ctx)
        return handle

    async def update(
        self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext
    ) -> BackendHandle:
        await ctx.backend.update(handle, dict(node.attributes))
        await _await_stable(handle, ctx)
        return handle

    async def delete(self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext) -> None:
        await ctx.backend.delete(handle)

    async def verify(self, node: ResourceNode, ctx: HandlerContext) -> None:
        """Plain resources need no follow-up once they are stable."""


def record_for(node: ResourceNode, graph: Graph) -> RecordHandle:
    """DNS record a ServiceRegistration node publishes."""
    namespaces = [
        graph.node(ref)
        for ref in sorted(node.references)
        if graph.node(ref).kind is ResourceKind.NAMESPACE
    ]
    if namespaces:
        namespace = str(namespaces[0].attributes.get("name") or namespaces[0].id)
    elif node.attributes.get("namespace"):
        namespace = str(node.attributes["namespace"])
    else:
        raise ValidationError(
            f"Service registration '{node.id}' does not reference a namespace",
            {"node": node.id},
        )
    return RecordHandle(
        namespace=namespace,
        name=str(node.attributes.get("name") or node.id),
        record_type=str(node.attributes.get("record_type", "A")),
    )


class ServiceRegistrationHandler(BackendHandler):
    """Runs the service and keeps its DNS record bound to the task endpoints."""

    kinds = (ResourceKind.SERVICE_REGISTRATION,)

    def __init__(
        self,
        binder: ServiceDiscoveryBinder,
        endpoint_source: EndpointSource,
        *,
        binding_timeout: float | None = None,
    ) -> None:
        self._binder = binder
        self._endpoints = endpoint_source
        self._timeout = binding_timeout

    async def _bind(self, node: ResourceNode, ctx: HandlerContext, handle: BackendHandle | None) -> BackendHandle:
        record = record_for(node, ctx.graph)
        await self._binder.register(
            node.id,
            namespace=record.namespace,
            name=record.name,
            record_type=record.record_type,
            target_task_id=target_task_id(node),
        )
        created = handle is None
        if handle is None:
            handle = await super().create(node, ctx)
        try:
            await self._binder.bind(node.id, self._endpoints, timeout=self._timeout)
        except BindingConsistencyError:
            if created:
                # a service that never became discoverable is not left running
                await self._binder.deregister(node.id)
                await ctx.backend.delete(handle)
            raise
        return handle

    async def create(self, node: ResourceNode, ctx: HandlerContext) -> BackendHandle:
        return await self._bind(node, ctx, None)

    async def update(
        self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext
    ) -> BackendHandle:
        handle = await super().update(node, handle, ctx)
        return await self._bind(node, ctx, handle)

    async def delete(self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext) -> None:
        record = record_for(node, ctx.graph)
        await self._binder.deregister(node.id, record=record)
        logger.info("service_record_removed", node=node.id, record=record.fqdn)
        await super().delete(node, handle, ctx)

    async def verify(self, node: ResourceNode, ctx: HandlerContext) -> None:
        """Raise if the binding gave up reconciling after it was bound."""
        binding = self._binder.get(node.id)
        if binding is None:
            return
        await self._binder.wait_idle(node.id)
        if binding.error:
            raise BindingConsistencyError(
                binding.error,
                {"registration": node.id, "record": binding.fqdn},
            )


def register_default_handlers(
    registry: ResourceRegistry,
    *,
    binder: ServiceDiscoveryBinder | None = None,
    endpoint_source: EndpointSource | None = None,
    binding_timeout: float | None = None,
) -> ResourceRegistry:
    """Register the built-in handlers; service discovery needs a binder and a source."""
    registry.register(BackendHandler())
    if binder is not None and endpoint_source is not None:
        registry.register(
            ServiceRegistrationHandler(binder, endpoint_source, binding_timeout=binding_timeout)
        )
    return registry
