from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Tuple

import structlog

from stackwright.core.errors import BackendError
from stackwright.discovery.endpoints import InMemoryEndpointSource
from stackwright.providers.base import BackendHandle, ResourceState
from stackwright.resources.models import Endpoint, ResourceKind, ResourceNode, target_task_id

logger = structlog.get_logger()


@dataclass
class _Resource:
    handle: BackendHandle
    kind: ResourceKind
    attributes: Dict[str, Any]
    pending_reads: int = 0
    task_id: str | None = None


@dataclass
class _Faults:
    errors: Dict[Tuple[str, str], Deque[BackendError]] = field(
        default_factory=lambda: defaultdict(deque)
    )
    delays: Dict[Tuple[str, str], float] = field(default_factory=dict)


class InMemoryBackend:
    """Process-local control plane with eventual consistency and fault injection.

    ServiceRegistration resources simulate their running tasks: creating
    one publishes ``desired_count`` endpoints for its target task on the
    attached endpoint source, deleting it publishes an empty set.
    """

    name = "memory"

    def __init__(
        self,
        *,
        endpoint_source: InMemoryEndpointSource | None = None,
        settle_reads: int = 0,
    ) -> None:
        self.endpoint_source = endpoint_source or InMemoryEndpointSource()
        self._settle_reads = settle_reads
        self._resources: Dict[str, _Resource] = {}
        self._faults = _Faults()
        self._launches = 0
        self.calls: List[Tuple[str, str]] = []

    # === Fault injection ===

    def fail_next(self, operation: str, node_id: str, error: BackendError, *, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` on ``node_id`` raise ``error``."""
        for _ in range(times):
            self._faults.errors[(operation, node_id)].append(error)

    def delay(self, operation: str, node_id: str, seconds: float) -> None:
        """Slow every ``operation`` call on ``node_id`` down by ``seconds``."""
        self._faults.delays[(operation, node_id)] = seconds

    def exists(self, node_id: str) -> bool:
        return node_id in self._resources

    def attributes(self, node_id: str) -> Dict[str, Any]:
        return dict(self._resources[node_id].attributes)

    def calls_for(self, operation: str) -> List[str]:
        return [node_id for op, node_id in self.calls if op == operation]

    async def _check(self, operation: str, node_id: str) -> None:
        self.calls.append((operation, node_id))
        delay = self._faults.delays.get((operation, node_id))
        if delay:
            await asyncio.sleep(delay)
        queue = self._faults.errors.get((operation, node_id))
        if queue:
            raise queue.popleft()

    # === ResourceBackend ===

    async def create(self, node: ResourceNode) -> BackendHandle:
        await self._check("create", node.id)
        existing = self._resources.get(node.id)
        if existing is not None:
            return existing.handle

        digest = hashlib.sha1(node.fingerprint.encode()).hexdigest()[:8]
        handle = BackendHandle(
            node_id=node.id,
            kind=node.kind.value,
            resource_id=f"{node.kind.value.lower()}-{digest}",
        )
        resource = _Resource(
            handle=handle,
            kind=node.kind,
            attributes=dict(node.attributes),
            pending_reads=self._settle_reads,
        )
        self._resources[node.id] = resource
        if node.kind is ResourceKind.SERVICE_REGISTRATION:
            resource.task_id = target_task_id(node)
            self._launch(resource)
        logger.debug("memory_resource_created", node=node.id, resource_id=handle.resource_id)
        return handle

    async def read(self, handle: BackendHandle) -> ResourceState:
        await self._check("read", handle.node_id)
        resource = self._resources.get(handle.node_id)
        if resource is None:
            return ResourceState(handle=handle, status="missing")
        if resource.pending_reads > 0:
            resource.pending_reads -= 1
            return ResourceState(handle=resource.handle, status="pending")
        return ResourceState(
            handle=resource.handle,
            status="ready",
            attributes=dict(resource.attributes),
        )

    async def update(self, handle: BackendHandle, attributes: Mapping[str, Any]) -> None:
        await self._check("update", handle.node_id)
        resource = self._resources.get(handle.node_id)
        if resource is None:
            # state from another process: adopt the handle
            resource = _Resource(handle=handle, kind=ResourceKind.parse(handle.kind), attributes={})
            if resource.kind is ResourceKind.SERVICE_REGISTRATION:
                resource.task_id = str(attributes.get("target") or handle.node_id)
            self._resources[handle.node_id] = resource
        resource.attributes = dict(attributes)
        resource.pending_reads = self._settle_reads
        if resource.kind is ResourceKind.SERVICE_REGISTRATION:
            self._launch(resource)

    async def delete(self, handle: BackendHandle) -> None:
        await self._check("delete", handle.node_id)
        resource = self._resources.pop(handle.node_id, None)
        if resource is not None and resource.task_id:
            self.endpoint_source.publish(resource.task_id, ())

    def _launch(self, resource: _Resource) -> None:
        """Replace the running tasks of a service with a fresh set."""
        self._launches += 1
        count = int(resource.attributes.get("desired_count", 1))
        port = int(resource.attributes.get("port", 80))
        endpoints = [
            Endpoint(f"10.0.{self._launches % 256}.{i + 1}", port) for i in range(count)
        ]
        self.endpoint_source.publish(resource.task_id or resource.handle.node_id, endpoints)
