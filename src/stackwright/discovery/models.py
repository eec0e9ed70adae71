"""
Data models for service-discovery bindings.

A binding tracks the association between one DNS record and the live
endpoint set of the compute task it names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, FrozenSet

from stackwright.core.errors import InvalidTransitionError
from stackwright.resources.models import Endpoint


class BindingState(StrEnum):
    """Lifecycle of a service binding."""

    UNBOUND = "unbound"
    REGISTERING = "registering"
    BOUND = "bound"
    UPDATING = "updating"
    DEREGISTERING = "deregistering"


_ALLOWED_TRANSITIONS: Dict[BindingState, FrozenSet[BindingState]] = {
    BindingState.UNBOUND: frozenset({BindingState.REGISTERING}),
    BindingState.REGISTERING: frozenset({BindingState.BOUND, BindingState.DEREGISTERING}),
    BindingState.BOUND: frozenset({BindingState.UPDATING, BindingState.DEREGISTERING}),
    BindingState.UPDATING: frozenset({BindingState.BOUND, BindingState.DEREGISTERING}),
    BindingState.DEREGISTERING: frozenset({BindingState.UNBOUND}),
}


@dataclass(frozen=True)
class RecordHandle:
    """Addresses a DNS record inside a namespace."""

    namespace: str
    name: str
    record_type: str = "A"

    @property
    def fqdn(self) -> str:
        return f"{self.name}.{self.namespace}"


@dataclass(frozen=True)
class EndpointChange:
    """Notification that a task's endpoint set changed."""

    task_id: str
    endpoints: FrozenSet[Endpoint]
    sequence: int = 0


@dataclass
class ServiceBinding:
    """A DNS record bound to the endpoints of one compute task."""

    registration_id: str
    namespace: str
    name: str
    record_type: str
    target_task_id: str
    current_endpoints: set[Endpoint] = field(default_factory=set)
    desired_endpoints: set[Endpoint] = field(default_factory=set)
    state: BindingState = BindingState.UNBOUND
    record: RecordHandle | None = None
    error: str | None = None

    @property
    def fqdn(self) -> str:
        return f"{self.name}.{self.namespace}"

    @property
    def in_sync(self) -> bool:
        return self.current_endpoints == self.desired_endpoints

    def transition(self, new_state: BindingState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Binding '{self.registration_id}' cannot move from "
                f"{self.state.value} to {new_state.value}",
                {"registration": self.registration_id},
            )
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "registration_id": self.registration_id,
            "fqdn": self.fqdn,
            "record_type": self.record_type,
            "target_task_id": self.target_task_id,
            "state": self.state.value,
            "current_endpoints": [str(e) for e in sorted(self.current_endpoints)],
            "desired_endpoints": [str(e) for e in sorted(self.desired_endpoints)],
            "error": self.error,
        }
