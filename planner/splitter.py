"""Cycle-breaking splitter for resgraph.

Mutually-referential nodes (the classic case is a load balancer security
group and a service security group that each need the other's id) cannot be
created in any order. The splitter detaches the cyclic attributes into
standalone EdgeResource nodes that depend on both endpoints, which turns the
dependency graph into a DAG.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Tuple

from planner.exceptions import UnresolvableCycleError
from planner.model import (
    ABSENT,
    Node,
    NodeKind,
    Reference,
    ResourceGraph,
    iter_references,
)
from planner.resolver import find_cycle_groups, resolve_references

logger = logging.getLogger(__name__)

DEFAULT_EDGE_PREFIX = "edge"

# (owning node id, attribute name, reference)
Cut = Tuple[str, str, Reference]


def _intra_group_references(graph: ResourceGraph, group: List[str]) -> List[Cut]:
    members = set(group)
    found = []
    for node_id in group:
        for name, value in graph.nodes[node_id].attributes.items():
            for reference in iter_references(value):
                if reference.to_node_id in members:
                    found.append((node_id, name, reference))
    return found


def _back_edges(group: List[str], candidates: List[Cut]) -> List[Cut]:
    """DFS back-edges of a cycle group, walked in declaration order."""
    outgoing: Dict[str, List[Cut]] = {node_id: [] for node_id in group}
    for cut in candidates:
        outgoing[cut[0]].append(cut)

    visited = set()
    on_path = set()
    back = []
    for root in group:
        if root in visited:
            continue
        visited.add(root)
        on_path.add(root)
        work = [(root, iter(outgoing[root]))]
        while work:
            current, edges = work[-1]
            advanced = False
            for cut in edges:
                target = cut[2].to_node_id
                if target in on_path:
                    back.append(cut)
                elif target not in visited:
                    visited.add(target)
                    on_path.add(target)
                    work.append((target, iter(outgoing[target])))
                    advanced = True
                    break
            if not advanced:
                work.pop()
                on_path.discard(current)
    return back


def select_cuts(graph: ResourceGraph, group: List[str]) -> List[Cut]:
    """Choose the references to detach from one cycle group.

    Directed references (rules with an ingress/egress style direction) are
    all detached. A group without any is broken at its DFS back-edges.
    """
    candidates = _intra_group_references(graph, group)
    directed = [cut for cut in candidates if cut[2].direction]
    if directed:
        return directed
    return _back_edges(group, candidates)


def _strip_reference(value: Any, reference: Reference) -> Any:
    """Remove one reference from an attribute value; ABSENT when nothing is left."""
    if isinstance(value, Reference):
        return ABSENT if value == reference else value
    if isinstance(value, list):
        kept = [_strip_reference(v, reference) for v in value]
        kept = [v for v in kept if v is not ABSENT]
        return kept if kept else ABSENT
    if isinstance(value, dict):
        kept = {k: _strip_reference(v, reference) for k, v in value.items()}
        kept = {k: v for k, v in kept.items() if v is not ABSENT}
        return kept if kept else ABSENT
    return value


def _edge_id(prefix: str, owner: str, attribute: str, index: int, total: int) -> str:
    base = f"{prefix}.{owner}.{attribute}"
    return base if total == 1 else f"{base}.{index}"


def make_edge_resource(
    edge_id: str, owner: str, attribute: str, reference: Reference, order: int
) -> Node:
    """Build the EdgeResource carrying one detached attribute."""
    attributes = {
        "source_id": Reference(owner, "id").bind(edge_id, "source_id"),
        "target_id": Reference(reference.to_node_id, "id").bind(edge_id, "target_id"),
        "direction": reference.direction or "dependency",
        "attribute": attribute,
        "value": replace(reference, from_node_id=edge_id, attribute_name="value"),
    }
    return Node(
        id=edge_id,
        kind=NodeKind.EDGE_RESOURCE,
        attributes=attributes,
        order=order,
    )


def split_cycles(
    graph: ResourceGraph, edge_prefix: str = DEFAULT_EDGE_PREFIX
) -> ResourceGraph:
    """Split every cycle group into base nodes plus EdgeResources.

    Args:
        graph: Resolved ResourceGraph
        edge_prefix: Prefix for generated EdgeResource ids

    Returns:
        The graph re-resolved as a DAG, with split_log entries appended

    Raises:
        UnresolvableCycleError: If a cycle remains after splitting
        DuplicateIdError: If a generated id collides with a declared node
    """
    groups = find_cycle_groups(graph)
    if not groups:
        logger.debug("No cycle groups found")
        return graph

    for group in groups:
        cuts = select_cuts(graph, group)
        logger.info(
            f"Cycle group {' <-> '.join(group)}: detaching {len(cuts)} attribute reference(s)"
        )
        per_attribute: Dict[Tuple[str, str], List[Reference]] = {}
        for owner, attribute, reference in cuts:
            per_attribute.setdefault((owner, attribute), []).append(reference)

        for (owner, attribute), references in per_attribute.items():
            node = graph.nodes[owner]
            for index, reference in enumerate(references):
                edge_id = _edge_id(
                    edge_prefix, owner, attribute, index, len(references)
                )
                edge = make_edge_resource(
                    edge_id, owner, attribute, reference, graph.next_order()
                )
                graph.add_node(edge)
                remaining = _strip_reference(
                    node.attributes.get(attribute, ABSENT), reference
                )
                if remaining is ABSENT:
                    node.attributes.pop(attribute, None)
                else:
                    node.attributes[attribute] = remaining
                graph.split_log.append(
                    {
                        "edge_id": edge_id,
                        "source": owner,
                        "target": reference.to_node_id,
                        "attribute": attribute,
                        "direction": edge.attributes["direction"],
                        "cycle_group": list(group),
                    }
                )
                logger.info(
                    f"  {edge_id}: {owner}.{attribute} -> {reference.to_node_id} "
                    f"({edge.attributes['direction']})"
                )

    graph = resolve_references(graph)
    residual = find_cycle_groups(graph)
    if residual:
        members = residual[0]
        raise UnresolvableCycleError(
            f"Cycle remains after splitting: {' -> '.join(members)}",
            context={"node_id": members[0], "cycle_group": ",".join(members)},
        )
    return graph
