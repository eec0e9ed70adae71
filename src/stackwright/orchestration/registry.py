"""Resource handler protocol and registry for orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from stackwright.orchestration.graph import Graph
from stackwright.providers.base import BackendHandle, ResourceBackend
from stackwright.resources.models import ResourceKind, ResourceNode


@dataclass
class HandlerContext:
    """Shared context passed to all resource handlers."""

    stack: str
    backend: ResourceBackend
    graph: Graph


@runtime_checkable
class ResourceHandler(Protocol):
    """Protocol for handlers that provision one or more resource kinds."""

    @property
    def kinds(self) -> Tuple[ResourceKind, ...]:
        """Resource kinds this handler is responsible for."""
        ...

    async def create(self, node: ResourceNode, ctx: HandlerContext) -> BackendHandle:
        """Create the resource and wait until it is stable."""
        ...

    async def update(
        self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext
    ) -> BackendHandle:
        """Push changed attributes and wait until the resource is stable."""
        ...

    async def delete(self, node: ResourceNode, handle: BackendHandle, ctx: HandlerContext) -> None:
        """Remove the resource."""
        ...

    async def verify(self, node: ResourceNode, ctx: HandlerContext) -> None:
        """Raise if a resource that already succeeded has since broken."""
        ...


class ResourceRegistry:
    """In-memory registry mapping resource kinds to handlers."""

    def __init__(self, default: Optional[ResourceHandler] = None) -> None:
        self._handlers: Dict[ResourceKind, ResourceHandler] = {}
        self._default = default

    def register(self, handler: ResourceHandler) -> None:
        """Register a handler for every kind it declares."""
        for kind in handler.kinds:
            self._handlers[kind] = handler

    def get(self, kind: ResourceKind) -> Optional[ResourceHandler]:
        """Get the handler for a kind, falling back to the default."""
        return self._handlers.get(kind, self._default)
