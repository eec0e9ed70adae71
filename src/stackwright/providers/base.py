from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Protocol

from stackwright.core.errors import BackendError
from stackwright.resources.models import ResourceNode


@dataclass(frozen=True)
class BackendHandle:
    """Identifies a backend-managed resource created for a node."""

    node_id: str
    kind: str
    resource_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"node_id": self.node_id, "kind": self.kind, "resource_id": self.resource_id}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackendHandle:
        return cls(
            node_id=data["node_id"],
            kind=data["kind"],
            resource_id=data.get("resource_id"),
        )

    @classmethod
    def for_node(cls, node: ResourceNode) -> BackendHandle:
        """Handle addressing a resource by node id alone."""
        return cls(node_id=node.id, kind=node.kind.value)


@dataclass(frozen=True)
class ResourceState:
    """Backend view of a resource."""

    handle: BackendHandle
    status: Literal["pending", "ready", "missing"]
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status == "ready"


class ResourceNotReadyError(BackendError):
    """A resource that exists but has not reported ready.

    Carries the handle so a caller that gives up can still track or
    delete the resource.
    """

    def __init__(self, message: str, handle: BackendHandle) -> None:
        super().__init__(
            message,
            transient=True,
            details={"reason": "not_ready", "node": handle.node_id},
        )
        self.handle = handle


class ResourceBackend(Protocol):
    """Control-plane contract consumed by the execution engine.

    ``create`` and ``update`` must be idempotent for a given node id so
    the engine can retry them after transient failures.
    """

    name: str

    async def create(self, node: ResourceNode) -> BackendHandle:
        ...

    async def read(self, handle: BackendHandle) -> ResourceState:
        ...

    async def update(self, handle: BackendHandle, attributes: Mapping[str, Any]) -> None:
        ...

    async def delete(self, handle: BackendHandle) -> None:
        ...
