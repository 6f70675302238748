"""Graph module for manifest-based orchestration.

Builds a dependency graph from a Manifest's resources and data sources and
computes traversal orderings for create (dependencies first) and destroy
(dependents first).
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from manifest import GraphError, Manifest, ResourceNode, find_cycle

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A node in the dependency graph with dependency/dependent edges.

    Wraps a ResourceNode and adds graph structure for traversal.

    Attributes:
        resource: The underlying ResourceNode declaration
        dependencies: Nodes this node references (must be realized first)
        dependents: Nodes that reference this node
        depth: Longest dependency chain below this node (0 for leaves)
    """
    resource: ResourceNode
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def address(self) -> str:
        return self.resource.address

    @property
    def type(self) -> str:
        return self.resource.type

    @property
    def is_data(self) -> bool:
        return self.resource.is_data

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, depth={self.depth})"


def topological_sort(addresses: Iterable[str], edges: dict[str, set[str]]) -> list[str]:
    """Order addresses so each one follows everything it depends on.

    Kahn's algorithm; among nodes that are ready at the same time the input
    order wins, so the result is stable for a given declaration.

    Args:
        addresses: All node addresses, in preferred tie-break order
        edges: address -> addresses it depends on

    Raises:
        GraphError: If the edges contain a cycle
    """
    order_index = {a: i for i, a in enumerate(addresses)}
    remaining = {a: set(edges.get(a, ())) & order_index.keys() for a in order_index}
    dependents: dict[str, list[str]] = {a: [] for a in order_index}
    for a, deps in remaining.items():
        for d in deps:
            dependents[d].append(a)

    ready = sorted((a for a, deps in remaining.items() if not deps), key=order_index.get)
    ordered: list[str] = []
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        newly_ready = []
        for dep in dependents[current]:
            remaining[dep].discard(current)
            if not remaining[dep]:
                newly_ready.append(dep)
        if newly_ready:
            ready = sorted(ready + newly_ready, key=order_index.get)

    if len(ordered) != len(order_index):
        stuck = {a: remaining[a] for a in order_index if a not in ordered}
        cycle = find_cycle(stuck) or sorted(stuck)
        raise GraphError(f"Cycle detected in resource graph: {' -> '.join(cycle)}")
    return ordered


class ResourceGraph:
    """Dependency graph built from a Manifest.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    - levels(): waves of mutually independent nodes
    """

    def __init__(self, manifest: Manifest):
        """Build the graph from a manifest.

        Raises:
            GraphError: If a reference is dangling or the graph has a cycle
        """
        self.manifest = manifest
        self._nodes: dict[str, GraphNode] = {}
        self._order: list[str] = []
        self._build_graph(manifest.nodes)

    def _build_graph(self, resources: list[ResourceNode]) -> None:
        """Build GraphNodes and edges from ResourceNodes."""
        for rn in resources:
            self._nodes[rn.address] = GraphNode(resource=rn)

        edges: dict[str, set[str]] = {}
        for rn in resources:
            node = self._nodes[rn.address]
            refs = rn.references()
            for ref in sorted(refs):
                if ref not in self._nodes:
                    raise GraphError(f"Node '{rn.address}' references unknown node '{ref}'")
                dep = self._nodes[ref]
                node.dependencies.append(dep)
                dep.dependents.append(node)
            edges[rn.address] = refs

        self._order = topological_sort([rn.address for rn in resources], edges)

        # Depth = longest chain of dependencies below the node
        for address in self._order:
            node = self._nodes[address]
            node.depth = max((d.depth + 1 for d in node.dependencies), default=0)

        logger.debug(f"Built graph for '{self.manifest.name}': {len(self._nodes)} nodes")

    @property
    def nodes(self) -> list[GraphNode]:
        return [self._nodes[a] for a in self._order]

    @property
    def max_depth(self) -> int:
        """Longest dependency chain."""
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    def get_node(self, address: str) -> GraphNode:
        """Get a GraphNode by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies before dependents)."""
        return [self._nodes[a] for a in self._order]

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (dependents before dependencies).

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))

    def levels(self) -> list[list[GraphNode]]:
        """Group nodes into waves that may be applied in parallel.

        Every node in wave N depends only on nodes in waves < N.
        """
        waves: dict[int, list[GraphNode]] = {}
        for node in self.create_order():
            waves.setdefault(node.depth, []).append(node)
        return [waves[d] for d in sorted(waves)]

    def dependencies(self, address: str) -> set[str]:
        """Direct dependency addresses of a node."""
        return {d.address for d in self._nodes[address].dependencies}

    def dependents(self, address: str, transitive: bool = True) -> set[str]:
        """Addresses that depend on a node (all descendants by default)."""
        start = self._nodes[address]
        if not transitive:
            return {d.address for d in start.dependents}

        found: set[str] = set()
        queue: deque[GraphNode] = deque(start.dependents)
        while queue:
            node = queue.popleft()
            if node.address in found:
                continue
            found.add(node.address)
            queue.extend(node.dependents)
        return found

    def to_dot(self, highlight: Optional[dict[str, str]] = None) -> str:
        """Render the graph in Graphviz DOT format.

        Args:
            highlight: Optional address -> plan action, appended to node labels
        """
        highlight = highlight or {}
        lines = [f'digraph "{self.manifest.name}" {{', '  rankdir = "BT";']
        for node in self.create_order():
            label = node.address
            if node.address in highlight:
                label = f'{label}\\n({highlight[node.address]})'
            shape = 'ellipse' if node.is_data else 'box'
            lines.append(f'  "{node.address}" [label="{label}", shape={shape}];')
        for node in self.create_order():
            for dep in node.dependencies:
                lines.append(f'  "{node.address}" -> "{dep.address}";')
        lines.append('}')
        return '\n'.join(lines)
