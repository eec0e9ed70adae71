"""
Plan compiler.

Orders a dependency graph into stages with Kahn's algorithm. Each stage
holds nodes that do not depend on one another and can be applied in
parallel; the teardown plan is the exact mirror image of the forward one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Literal, Optional, Tuple

from stackwright.core.errors import CycleError
from stackwright.orchestration.graph import Graph, build
from stackwright.orchestration.results import ExecutionResult, NodeStatus
from stackwright.resources.models import ResourceNode

Direction = Literal["forward", "reverse"]
Stage = Tuple[str, ...]


@dataclass(frozen=True, eq=False)
class Plan:
    """Ordered stages over a graph."""

    stages: Tuple[Stage, ...]
    graph: Graph
    direction: Direction = "forward"

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def node_ids(self) -> List[str]:
        """Every node id in execution order."""
        return [node_id for stage in self.stages for node_id in stage]

    def stage_index(self, node_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if node_id in stage:
                return index
        raise KeyError(node_id)

    def reversed(self) -> Plan:
        """The teardown order for this plan (and vice versa)."""
        return Plan(
            stages=tuple(reversed(self.stages)),
            graph=self.graph,
            direction="reverse" if self.direction == "forward" else "forward",
        )

    def to_list(self) -> List[List[str]]:
        return [list(stage) for stage in self.stages]


@dataclass(frozen=True)
class PlannedChange:
    """What a node would do if the plan were executed now."""

    node_id: str
    kind: str
    stage: int
    action: Literal["create", "update", "noop", "delete", "skip"]

    def to_dict(self) -> Dict[str, object]:
        return {"node_id": self.node_id, "kind": self.kind, "stage": self.stage, "action": self.action}


class PlanCompiler:
    """Compiles validated graphs into staged plans."""

    def compile(self, graph: Graph) -> Plan:
        remaining: Dict[str, int] = {
            node_id: len(graph.dependencies(node_id)) for node_id in graph.nodes
        }
        ready = sorted(node_id for node_id, count in remaining.items() if count == 0)
        stages: List[Stage] = []

        while ready:
            stage = tuple(ready)
            stages.append(stage)
            next_ready: List[str] = []
            for node_id in stage:
                del remaining[node_id]
                for dependent in graph.dependents(node_id):
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        next_ready.append(dependent)
            ready = sorted(next_ready)

        if remaining:
            # build() rejects cycles, so this only trips on a hand-made graph
            raise CycleError(sorted(remaining))

        return Plan(stages=tuple(stages), graph=graph)

    def compile_nodes(self, nodes: Iterable[ResourceNode]) -> Plan:
        """Build the graph and compile it in one step."""
        return self.compile(build(nodes))

    def describe(
        self,
        plan: Plan,
        previous: Optional[ExecutionResult] = None,
    ) -> List[PlannedChange]:
        """Preview the action each node would take given prior state."""
        changes: List[PlannedChange] = []
        for index, stage in enumerate(plan.stages):
            for node_id in stage:
                node = plan.graph.node(node_id)
                prior = previous.outcomes.get(node_id) if previous else None
                if plan.direction == "reverse":
                    # without any prior state every node is assumed present
                    present = previous is None or (
                        prior is not None
                        and prior.status in (NodeStatus.SUCCEEDED, NodeStatus.FAILED)
                    )
                    action = "delete" if present else "skip"
                elif prior is None or prior.handle is None:
                    action = "create"
                elif prior.status is NodeStatus.SUCCEEDED and prior.fingerprint == node.fingerprint:
                    action = "noop"
                else:
                    action = "update"
                changes.append(PlannedChange(node_id, node.kind.value, index, action))
        return changes


def compile_plan(nodes: Iterable[ResourceNode]) -> Plan:
    return PlanCompiler().compile_nodes(nodes)
