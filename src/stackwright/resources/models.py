"""
Resource node models.

A ResourceNode is one provisionable unit of a stack (network, cluster,
role, ...) with its declared attributes and the ids of the nodes it
references. Nodes are immutable once declared; a fresh set is built for
every deployment attempt.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from stackwright.core.errors import ValidationError


class ResourceKind(StrEnum):
    """Capability tags for provisionable resources."""

    NETWORK = "Network"
    CLUSTER = "Cluster"
    NAMESPACE = "Namespace"
    ROLE = "Role"
    LOG_SINK = "LogSink"
    TASK_TEMPLATE = "TaskTemplate"
    CONTAINER_SPEC = "ContainerSpec"
    SECURITY_RULE = "SecurityRule"
    SERVICE_REGISTRATION = "ServiceRegistration"

    @classmethod
    def parse(cls, value: str | ResourceKind) -> ResourceKind:
        """Resolve a kind from its tag, case-insensitively."""
        if isinstance(value, ResourceKind):
            return value
        normalized = str(value).replace("_", "").replace("-", "").lower()
        for kind in cls:
            if kind.value.lower() == normalized:
                return kind
        raise ValidationError(
            f"Unknown resource kind '{value}'",
            {"allowed": [k.value for k in cls]},
        )


@dataclass(frozen=True)
class ResourceNode:
    """A declared infrastructure resource."""

    id: str
    kind: ResourceKind
    attributes: Mapping[str, Any] = field(default_factory=dict)
    references: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("Resource node id is required")
        object.__setattr__(self, "kind", ResourceKind.parse(self.kind))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "references", frozenset(self.references))
        if self.id in self.references:
            raise ValidationError(
                f"Node '{self.id}' references itself",
                {"node": self.id},
            )

    def __hash__(self) -> int:
        return hash((self.id, self.kind))

    @property
    def fingerprint(self) -> str:
        """Stable digest of kind, attributes and references."""
        payload = json.dumps(
            {
                "kind": self.kind.value,
                "attributes": dict(self.attributes),
                "references": sorted(self.references),
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "attributes": dict(self.attributes),
            "references": sorted(self.references),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceNode:
        """Build a node from its declared (YAML/JSON) form."""
        try:
            node_id = data["id"]
            kind = data["kind"]
        except KeyError as exc:
            raise ValidationError(
                f"Resource declaration is missing '{exc.args[0]}'",
                {"declaration": dict(data)},
            ) from exc
        return cls(
            id=str(node_id),
            kind=ResourceKind.parse(kind),
            attributes=data.get("attributes") or {},
            references=frozenset(str(r) for r in data.get("references") or ()),
        )


def target_task_id(node: ResourceNode) -> str:
    """Compute task whose endpoints a ServiceRegistration publishes."""
    return str(node.attributes.get("target") or node.id)


def index_nodes(nodes: Iterable[ResourceNode]) -> dict[str, ResourceNode]:
    """Index nodes by id, rejecting duplicates."""
    indexed: dict[str, ResourceNode] = {}
    for node in nodes:
        if node.id in indexed:
            raise ValidationError(f"Duplicate node id '{node.id}'", {"node": node.id})
        indexed[node.id] = node
    return indexed


@dataclass(frozen=True, order=True)
class Endpoint:
    """A single network-reachable instance of a compute task."""

    address: str
    port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.address}:{self.port}/{self.protocol}"

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "port": self.port, "protocol": self.protocol}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Endpoint:
        return cls(
            address=str(data["address"]),
            port=int(data["port"]),
            protocol=str(data.get("protocol", "tcp")),
        )
