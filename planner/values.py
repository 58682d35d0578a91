"""Attribute value resolution helpers.

Turns Reference placeholders into the best value known at a given moment:
an output recorded by the backend, a literal declared on the target node,
the reference default, ABSENT or UNKNOWN.
"""

from typing import Any, Dict, Optional

from planner.model import ABSENT, UNKNOWN, Reference, ResourceGraph, map_references

# node id -> outputs reported by the backend
Known = Dict[str, Dict[str, Any]]


def reference_value(
    graph: ResourceGraph,
    reference: Reference,
    known: Optional[Known] = None,
    _depth: int = 0,
) -> Any:
    """Current value of the attribute a reference points at.

    Once the target has been applied its recorded outputs are authoritative:
    an attribute it neither output nor declared resolves to the default or
    ABSENT rather than UNKNOWN.
    """
    known = known or {}
    target = graph.nodes.get(reference.to_node_id)
    if target is None:
        return reference.default if reference.has_default else ABSENT

    outputs = known.get(reference.to_node_id, {})
    if reference.to_attribute_name in outputs:
        return outputs[reference.to_attribute_name]
    if reference.to_attribute_name in target.attributes and _depth < len(graph.nodes):
        return resolve_value(
            graph, target.attributes[reference.to_attribute_name], known, _depth + 1
        )
    if reference.to_node_id in known:
        return reference.default if reference.has_default else ABSENT
    return UNKNOWN


def resolve_value(
    graph: ResourceGraph, value: Any, known: Optional[Known] = None, _depth: int = 0
) -> Any:
    return map_references(value, lambda r: reference_value(graph, r, known, _depth))


def resolve_attributes(
    graph: ResourceGraph, node_id: str, known: Optional[Known] = None
) -> Dict[str, Any]:
    """Attribute map of a node with every reference replaced by its value."""
    node = graph.nodes[node_id]
    return {
        name: resolve_value(graph, value, known)
        for name, value in node.attributes.items()
    }


def render_value(value: Any) -> Any:
    """JSON-friendly form of a resolved value (sentinels become their rendering)."""
    if value is ABSENT or value is UNKNOWN:
        return value.rendered
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value
