"""Node status tracking and execution result types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional

from stackwright.core.errors import InvalidTransitionError
from stackwright.providers.base import BackendHandle

Operation = Literal["apply", "teardown"]


class NodeStatus(StrEnum):
    """Lifecycle of a node within one execution."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_ALLOWED_TRANSITIONS: Dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.IN_PROGRESS}),
    NodeStatus.IN_PROGRESS: frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED}),
    # rollback or teardown; failed when a delete gave up or the resource broke later
    NodeStatus.SUCCEEDED: frozenset({NodeStatus.ROLLED_BACK, NodeStatus.FAILED}),
    NodeStatus.FAILED: frozenset({NodeStatus.ROLLED_BACK}),
    NodeStatus.ROLLED_BACK: frozenset(),
}


@dataclass
class NodeOutcome:
    """Per-node record kept in the execution result."""

    node_id: str
    kind: str
    status: NodeStatus = NodeStatus.PENDING
    action: str | None = None  # create | update | skip | delete
    handle: BackendHandle | None = None
    fingerprint: str | None = None
    attempts: int = 0
    error: str | None = None
    blocked_by: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "status": self.status.value,
            "action": self.action,
            "handle": self.handle.to_dict() if self.handle else None,
            "fingerprint": self.fingerprint,
            "attempts": self.attempts,
            "error": self.error,
            "blocked_by": self.blocked_by,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodeOutcome:
        handle = data.get("handle")
        return cls(
            node_id=data["node_id"],
            kind=data["kind"],
            status=NodeStatus(data["status"]),
            action=data.get("action"),
            handle=BackendHandle.from_dict(handle) if handle else None,
            fingerprint=data.get("fingerprint"),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
            blocked_by=data.get("blocked_by"),
        )


@dataclass
class ExecutionResult:
    """Result of applying or tearing down a plan."""

    stack: str
    operation: Operation
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)
    stages_completed: int = 0
    cancelled: bool = False
    rolled_back: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def status_of(self, node_id: str) -> NodeStatus:
        return self.outcomes[node_id].status

    def statuses(self) -> Dict[str, NodeStatus]:
        return {node_id: o.status for node_id, o in self.outcomes.items()}

    @property
    def failed_nodes(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.status is NodeStatus.FAILED]

    @property
    def blocked_nodes(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.blocked_by]

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def success(self) -> bool:
        """Whether the operation reached its goal for every node."""
        if self.cancelled or self.failed_nodes or self.blocked_nodes:
            return False
        if self.operation == "apply":
            return all(o.status is NodeStatus.SUCCEEDED for o in self.outcomes.values())
        return all(o.status is not NodeStatus.SUCCEEDED for o in self.outcomes.values())

    def counts(self) -> Dict[str, int]:
        """Number of nodes per status."""
        totals = {status.value: 0 for status in NodeStatus}
        for outcome in self.outcomes.values():
            totals[outcome.status.value] += 1
        return totals

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "stack": self.stack,
            "operation": self.operation,
            "success": self.success,
            "cancelled": self.cancelled,
            "stages_completed": self.stages_completed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "rolled_back": list(self.rolled_back),
            "failed": self.failed_nodes,
            "nodes": [o.to_dict() for o in self.outcomes.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionResult:
        outcomes = [NodeOutcome.from_dict(n) for n in data.get("nodes", [])]
        return cls(
            stack=data["stack"],
            operation=data["operation"],
            outcomes={o.node_id: o for o in outcomes},
            stages_completed=int(data.get("stages_completed", 0)),
            cancelled=bool(data.get("cancelled", False)),
            rolled_back=list(data.get("rolled_back", [])),
            started_at=float(data.get("started_at") or 0.0),
            finished_at=data.get("finished_at"),
        )


class ResultCollector:
    """Owns the node status table for one execution.

    Every status change goes through :meth:`transition`, which rejects
    moves the node state machine does not allow.
    """

    def __init__(self, stack: str, operation: Operation, outcomes: Iterable[NodeOutcome]) -> None:
        self._result = ExecutionResult(
            stack=stack,
            operation=operation,
            outcomes={o.node_id: o for o in outcomes},
        )

    @property
    def result(self) -> ExecutionResult:
        return self._result

    def outcome(self, node_id: str) -> NodeOutcome:
        return self._result.outcomes[node_id]

    def status(self, node_id: str) -> NodeStatus:
        return self._result.outcomes[node_id].status

    def transition(self, node_id: str, new_status: NodeStatus) -> None:
        outcome = self._result.outcomes[node_id]
        if new_status not in _ALLOWED_TRANSITIONS[outcome.status]:
            raise InvalidTransitionError(
                f"Node '{node_id}' cannot move from {outcome.status.value} to {new_status.value}",
                {"node": node_id},
            )
        outcome.status = new_status

    def start(self, node_id: str, action: str) -> None:
        self.transition(node_id, NodeStatus.IN_PROGRESS)
        outcome = self.outcome(node_id)
        outcome.action = action
        outcome.error = None
        outcome.blocked_by = None

    def succeed(
        self,
        node_id: str,
        handle: BackendHandle | None,
        fingerprint: str,
        attempts: int,
    ) -> None:
        self.transition(node_id, NodeStatus.SUCCEEDED)
        outcome = self.outcome(node_id)
        outcome.handle = handle
        outcome.fingerprint = fingerprint
        outcome.attempts = attempts

    def fail(
        self,
        node_id: str,
        error: BaseException | str,
        attempts: int,
        handle: BackendHandle | None = None,
    ) -> None:
        if self.status(node_id) is not NodeStatus.FAILED:
            self.transition(node_id, NodeStatus.FAILED)
        outcome = self.outcome(node_id)
        outcome.error = str(error)
        outcome.attempts = attempts
        if handle is not None:
            outcome.handle = handle

    def release(self, node_id: str) -> None:
        """Forget the resource of a failed node once it has been deleted."""
        outcome = self.outcome(node_id)
        if outcome.status is not NodeStatus.FAILED:
            raise InvalidTransitionError(
                f"Node '{node_id}' is {outcome.status.value}, only failed nodes are released",
                {"node": node_id},
            )
        outcome.handle = None

    def roll_back(self, node_id: str, attempts: int) -> None:
        self.transition(node_id, NodeStatus.ROLLED_BACK)
        outcome = self.outcome(node_id)
        outcome.action = "delete"
        outcome.attempts = attempts
        outcome.handle = None
        self._result.rolled_back.append(node_id)

    def block(self, node_id: str, blocked_by: str, reason: Optional[str] = None) -> None:
        outcome = self.outcome(node_id)
        outcome.blocked_by = blocked_by
        if reason:
            outcome.error = reason

    def stage_done(self) -> None:
        self._result.stages_completed += 1

    def cancel(self) -> None:
        self._result.cancelled = True

    def finalize(self) -> ExecutionResult:
        """Return the final result with the finish time set."""
        self._result.finished_at = time.time()
        return self._result
