"""Conditional materializer for resgraph.

Evaluates node preconditions and removes nodes whose precondition is false.
Removal cascades: an attribute referencing a pruned node falls back to the
reference default, and a node holding such a reference without a default is
pruned as well. Pruned nodes are absent from the plan, not no-ops.
"""

import logging
from typing import Any, List, Optional, Tuple, Union

from planner.expressions import describe, evaluate
from planner.model import ABSENT, Node, Reference, ResourceGraph, map_references
from planner.resolver import resolve_references
from planner.values import Known, reference_value, resolve_value

logger = logging.getLogger(__name__)


def detached_value(
    graph: ResourceGraph, node_id: str, attribute: str, known: Optional[Known] = None
) -> Any:
    """Value of an attribute the splitter moved onto EdgeResources.

    One cut yields the single value, several cuts a list in split order.
    """
    values = [
        resolve_value(graph, graph.nodes[entry["edge_id"]].attributes["value"], known)
        for entry in graph.split_log
        if entry["source"] == node_id
        and entry["attribute"] == attribute
        and entry["edge_id"] in graph.nodes
    ]
    if not values:
        return ABSENT
    return values[0] if len(values) == 1 else values


def make_lookup(graph: ResourceGraph, node: Node, known: Optional[Known] = None):
    """Build the value lookup used to evaluate node's preconditions."""

    def lookup(subject: Union[str, Reference]) -> Any:
        if isinstance(subject, Reference):
            return reference_value(graph, subject, known)
        if subject not in node.attributes:
            return detached_value(graph, node.id, subject, known)
        return resolve_value(graph, node.attributes[subject], known)

    return lookup


def failed_precondition(
    graph: ResourceGraph, node: Node, known: Optional[Known] = None
) -> Optional[Any]:
    """Return the first false precondition of node, or None if all hold."""
    lookup = make_lookup(graph, node, known)
    for precondition in node.preconditions:
        if not evaluate(node, precondition, lookup):
            return precondition
    return None


def prune_node(
    graph: ResourceGraph, node_id: str, reason: str, caused_by: Optional[str] = None
) -> List[str]:
    """Remove a node and cascade to dependents without defaults.

    Returns:
        Ids of every node removed, in removal order
    """
    removed = []
    queue: List[Tuple[str, str, Optional[str]]] = [(node_id, reason, caused_by)]
    while queue:
        current, why, cause = queue.pop(0)
        if current not in graph.nodes:
            continue
        graph.remove_node(current)
        removed.append(current)
        graph.prune_log.append({"node_id": current, "reason": why, "caused_by": cause})
        logger.info(f"Pruned {current}: {why}")

        for dependent_id in graph.dependents.get(current, []):
            dependent = graph.nodes.get(dependent_id)
            if dependent is None:
                continue
            missing = []

            def substitute(reference: Reference) -> Any:
                if reference.to_node_id != current:
                    return reference
                if reference.has_default:
                    return reference.default
                missing.append(reference.attribute_name)
                return reference

            updated = {
                name: map_references(value, substitute)
                for name, value in dependent.attributes.items()
            }
            if missing:
                queue.append(
                    (
                        dependent_id,
                        f"references pruned node '{current}' "
                        f"({', '.join(sorted(set(missing)))}) without a default",
                        current,
                    )
                )
            else:
                dependent.attributes = updated
                logger.debug(f"{dependent_id}: defaults substituted for '{current}'")
    return removed


def materialize(graph: ResourceGraph, known: Optional[Known] = None) -> ResourceGraph:
    """Prune nodes with a false precondition, to a fixed point.

    A prune can flip another node's precondition (for example one testing
    ref.<pruned>.attr != null), so evaluation repeats until nothing changes.

    Args:
        graph: Resolved, acyclic ResourceGraph
        known: Outputs of already-applied nodes

    Returns:
        The graph without pruned nodes, re-resolved

    Raises:
        PreconditionEvaluationError: On a malformed or undecidable predicate
    """
    changed = True
    while changed:
        changed = False
        for node_id in graph.ordered_ids():
            node = graph.nodes.get(node_id)
            if node is None or not node.preconditions:
                continue
            failed = failed_precondition(graph, node, known)
            if failed is not None:
                prune_node(graph, node_id, f"precondition '{describe(failed)}' is false")
                changed = True

    if graph.prune_log:
        logger.info(f"Pruned {len(graph.pruned)} node(s) in total")
    return resolve_references(graph)
