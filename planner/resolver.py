"""Reference resolver for resgraph.

Walks every declared Reference, binds it to its target node and derives the
dependency adjacency used by the later stages. Purely structural: no
precondition is evaluated here.
"""

import logging
from typing import Dict, List

from planner.exceptions import DanglingReferenceError, SelfReferenceError
from planner.model import NodeState, ResourceGraph

logger = logging.getLogger(__name__)


def resolve_references(graph: ResourceGraph) -> ResourceGraph:
    """Build depends_on/dependents adjacency from node references.

    Multiple references between the same pair of nodes collapse into one
    edge. References to undeclared nodes that carry a default produce no
    edge and resolve to the default later.

    Args:
        graph: ResourceGraph from Builder.build() or a previous stage

    Returns:
        The same graph with depends_on and dependents rebuilt

    Raises:
        SelfReferenceError: If a node references itself
        DanglingReferenceError: If a target is undeclared and has no default
    """
    depends_on: Dict[str, List[str]] = {}
    for node_id in graph.ordered_ids():
        node = graph.nodes[node_id]
        targets = set()
        for reference in node.references():
            target = reference.to_node_id
            if target == node_id:
                raise SelfReferenceError(
                    f"Node '{node_id}' references its own attribute "
                    f"'{reference.to_attribute_name}'",
                    context={"node_id": node_id, "attribute": reference.attribute_name},
                )
            if target in graph.nodes:
                targets.add(target)
            elif not reference.has_default:
                raise DanglingReferenceError(
                    f"Node '{node_id}' references undeclared node '{target}'",
                    context={
                        "node_id": node_id,
                        "attribute": reference.attribute_name,
                        "target": target,
                    },
                )
            else:
                logger.debug(
                    f"{node_id}.{reference.attribute_name}: target '{target}' "
                    f"not declared, using default"
                )
        depends_on[node_id] = sorted(targets, key=lambda n: graph.nodes[n].order)
        if node.state == NodeState.DECLARED:
            node.set_state(NodeState.RESOLVED)

    dependents: Dict[str, List[str]] = {node_id: [] for node_id in depends_on}
    for node_id in depends_on:
        for target in depends_on[node_id]:
            dependents[target].append(node_id)

    graph.depends_on = depends_on
    graph.dependents = dependents
    edge_count = sum(len(v) for v in depends_on.values())
    logger.info(f"Resolved {len(depends_on)} nodes with {edge_count} dependency edges")
    return graph


def find_cycle_groups(graph: ResourceGraph) -> List[List[str]]:
    """Find strongly-connected components with more than one node.

    Iterative Tarjan's algorithm. Roots and neighbours are visited in
    declaration order so the result is deterministic.

    Args:
        graph: Resolved ResourceGraph

    Returns:
        List of cycle groups, each sorted by declaration order, the list
        itself sorted by the first member's declaration order
    """
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack = set()
    stack: List[str] = []
    groups: List[List[str]] = []
    counter = 0

    for root in graph.ordered_ids():
        if root in index:
            continue
        work = [(root, iter(graph.depends_on.get(root, [])))]
        index[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            current, neighbours = work[-1]
            advanced = False
            for child in neighbours:
                if child not in index:
                    index[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(graph.depends_on.get(child, []))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[current] = min(lowlink[current], index[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[current])
            if lowlink[current] == index[current]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == current:
                        break
                if len(component) > 1:
                    groups.append(sorted(component, key=lambda n: graph.nodes[n].order))

    return sorted(groups, key=lambda g: graph.nodes[g[0]].order)
