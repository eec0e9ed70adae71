"""
Dependency graph builder.

Turns a set of declared resource nodes into a validated dependency graph.
An edge ``A -> B`` means A references B, so B has to be stable before A
is applied and A has to be gone before B is torn down.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Tuple

from stackwright.core.errors import CycleError, DanglingReferenceError
from stackwright.resources.models import ResourceNode, index_nodes


@dataclass(frozen=True, eq=False)
class Graph:
    """Validated, acyclic dependency graph over resource nodes."""

    nodes: Dict[str, ResourceNode]
    _dependents: Dict[str, FrozenSet[str]] = field(repr=False)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    def dependencies(self, node_id: str) -> FrozenSet[str]:
        """Nodes that ``node_id`` references directly."""
        return self.nodes[node_id].references

    def dependents(self, node_id: str) -> FrozenSet[str]:
        """Nodes that reference ``node_id`` directly."""
        return self._dependents.get(node_id, frozenset())

    def transitive_dependents(self, node_id: str) -> List[str]:
        """Every node that depends on ``node_id``, directly or not, sorted."""
        seen: set[str] = set()
        stack = list(self.dependents(node_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents(current))
        return sorted(seen)

    def edges(self) -> Iterator[Tuple[str, str]]:
        """Yield ``(dependent, dependency)`` pairs in id order."""
        for node_id in sorted(self.nodes):
            for ref in sorted(self.nodes[node_id].references):
                yield node_id, ref


def build(nodes: Iterable[ResourceNode]) -> Graph:
    """
    Build a dependency graph from declared nodes.

    Raises:
        ValidationError: on duplicate node ids
        DanglingReferenceError: when a reference does not resolve
        CycleError: when the reference relation is cyclic
    """
    indexed = index_nodes(nodes)

    for node_id in sorted(indexed):
        for ref in sorted(indexed[node_id].references):
            if ref not in indexed:
                raise DanglingReferenceError(node_id, ref)

    _check_acyclic(indexed)

    dependents: Dict[str, set[str]] = {node_id: set() for node_id in indexed}
    for node_id, node in indexed.items():
        for ref in node.references:
            dependents[ref].add(node_id)

    return Graph(
        nodes=indexed,
        _dependents={k: frozenset(v) for k, v in dependents.items()},
    )


def _check_acyclic(nodes: Dict[str, ResourceNode]) -> None:
    """Depth-first search tracking the in-progress path."""
    done: set[str] = set()

    for root in sorted(nodes):
        if root in done:
            continue

        path: List[str] = [root]
        in_progress: set[str] = {root}
        # Each frame holds the remaining references still to visit.
        frames: List[Iterator[str]] = [iter(sorted(nodes[root].references))]

        while frames:
            ref = next(frames[-1], None)
            if ref is None:
                finished = path.pop()
                in_progress.discard(finished)
                done.add(finished)
                frames.pop()
                continue
            if ref in in_progress:
                start = path.index(ref)
                raise CycleError(path[start:] + [ref])
            if ref in done:
                continue
            path.append(ref)
            in_progress.add(ref)
            frames.append(iter(sorted(nodes[ref].references)))
