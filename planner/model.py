"""Resource node model for resgraph.

Declarations are collected by a Builder scoped to a single planning run and
frozen into a ResourceGraph, which every later pipeline stage receives and
returns. Attribute values are literals or tagged Reference placeholders;
nothing is evaluated here.
"""

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from planner.exceptions import DuplicateIdError, StateTransitionError


class _Sentinel:
    """Named singleton placeholder value."""

    def __init__(self, name: str, rendered: Any):
        self.name = name
        self.rendered = rendered

    def __repr__(self) -> str:
        return self.name

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


# Value of an attribute whose source was conditionally pruned
ABSENT = _Sentinel("ABSENT", None)
# Output the backend has not produced yet
UNKNOWN = _Sentinel("UNKNOWN", "(known after apply)")


class NodeKind(str, Enum):
    RESOURCE = "Resource"
    EDGE_RESOURCE = "EdgeResource"


class NodeState(str, Enum):
    DECLARED = "Declared"
    RESOLVED = "Resolved"
    SCHEDULED = "Scheduled"
    APPLIED = "Applied"
    STALE = "Stale"
    FAILED = "Failed"
    DESTROYED = "Destroyed"


# Legal lifecycle moves: state -> states it may move to
TRANSITIONS: Dict[NodeState, tuple] = {
    NodeState.DECLARED: (NodeState.RESOLVED,),
    NodeState.RESOLVED: (NodeState.RESOLVED, NodeState.SCHEDULED),
    NodeState.SCHEDULED: (
        NodeState.SCHEDULED,
        NodeState.APPLIED,
        NodeState.FAILED,
        NodeState.DESTROYED,
    ),
    NodeState.APPLIED: (
        NodeState.APPLIED,
        NodeState.STALE,
        NodeState.SCHEDULED,
        NodeState.DESTROYED,
    ),
    NodeState.STALE: (NodeState.STALE, NodeState.SCHEDULED, NodeState.DESTROYED),
    NodeState.FAILED: (NodeState.SCHEDULED, NodeState.DESTROYED),
    NodeState.DESTROYED: (NodeState.SCHEDULED,),
}


def check_transition(node_id: str, current: NodeState, new: NodeState) -> NodeState:
    """Validate a lifecycle move and return the new state.

    Raises:
        StateTransitionError: If the move is not in TRANSITIONS
    """
    if new not in TRANSITIONS[current]:
        raise StateTransitionError(
            f"Illegal transition {current.value} -> {new.value}",
            context={"node_id": node_id},
        )
    return new


@dataclass(frozen=True)
class Reference:
    """Tagged pointer from one node's attribute to another node's output.

    Args:
        to_node_id: Id of the node whose output is needed
        to_attribute_name: Output attribute on the target node
        from_node_id: Owning node, bound at declaration time
        attribute_name: Owning attribute, bound at declaration time
        direction: Marks the attribute as a detachable rule (ingress/egress)
        default: Value used when the target is pruned or undeclared
    """

    to_node_id: str
    to_attribute_name: str = "id"
    from_node_id: Optional[str] = None
    attribute_name: Optional[str] = None
    direction: Optional[str] = None
    default: Any = ABSENT

    @property
    def has_default(self) -> bool:
        return self.default is not ABSENT

    def bind(self, from_node_id: str, attribute_name: str) -> "Reference":
        return replace(self, from_node_id=from_node_id, attribute_name=attribute_name)

    def __str__(self) -> str:
        text = f"${{ref.{self.to_node_id}.{self.to_attribute_name}}}"
        if self.direction:
            text = text[:-1] + f":{self.direction}}}"
        return text


def ref(
    node_id: str,
    attribute: str = "id",
    direction: Optional[str] = None,
    default: Any = ABSENT,
) -> Reference:
    """Shorthand for an unbound Reference placeholder."""
    return Reference(node_id, attribute, direction=direction, default=default)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested in an attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def map_references(value: Any, func: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with every Reference replaced by func(reference)."""
    if isinstance(value, Reference):
        return func(value)
    if isinstance(value, dict):
        return {k: map_references(v, func) for k, v in value.items()}
    if isinstance(value, list):
        return [map_references(v, func) for v in value]
    if isinstance(value, tuple):
        return tuple(map_references(v, func) for v in value)
    return value


@dataclass
class Node:
    """A single declared unit of desired state."""

    id: str
    kind: NodeKind = NodeKind.RESOURCE
    attributes: Dict[str, Any] = field(default_factory=dict)
    preconditions: List[Any] = field(default_factory=list)
    order: int = 0
    state: NodeState = NodeState.DECLARED

    @property
    def is_edge(self) -> bool:
        return self.kind == NodeKind.EDGE_RESOURCE

    def references(self) -> List[Reference]:
        """All references held by this node, in attribute order."""
        found: List[Reference] = []
        for value in self.attributes.values():
            found.extend(iter_references(value))
        return found

    def set_state(self, new_state: NodeState) -> None:
        self.state = check_transition(self.id, self.state, new_state)


@dataclass
class ResourceGraph:
    """Per-run container of nodes plus derived dependency data.

    Nodes are kept in declaration order; depends_on and dependents are filled
    by the resolver and are empty until then.
    """

    nodes: Dict[str, Node] = field(default_factory=dict)
    depends_on: Dict[str, List[str]] = field(default_factory=dict)
    dependents: Dict[str, List[str]] = field(default_factory=dict)
    pruned: Dict[str, Node] = field(default_factory=dict)
    split_log: List[Dict[str, Any]] = field(default_factory=list)
    prune_log: List[Dict[str, Any]] = field(default_factory=list)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def ordered_ids(self) -> List[str]:
        return sorted(self.nodes, key=lambda n: self.nodes[n].order)

    def next_order(self) -> int:
        orders = [n.order for n in self.nodes.values()]
        orders.extend(n.order for n in self.pruned.values())
        return max(orders) + 1 if orders else 0

    def add_node(self, node: Node) -> Node:
        if node.id in self.nodes or node.id in self.pruned:
            raise DuplicateIdError(
                f"Node '{node.id}' is already declared", context={"node_id": node.id}
            )
        self.nodes[node.id] = node
        return node

    def remove_node(self, node_id: str) -> Node:
        node = self.nodes.pop(node_id)
        self.pruned[node_id] = node
        return node

    def transitive_dependents(self, node_ids) -> List[str]:
        """Nodes reachable through dependents edges, excluding the start set."""
        seen = set(node_ids)
        stack = list(node_ids)
        found = []
        while stack:
            current = stack.pop()
            for child in self.dependents.get(current, []):
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    stack.append(child)
        return sorted(found, key=lambda n: self.nodes[n].order)


class Builder:
    """Collects node declarations for one planning run.

    Example:
        >>> builder = Builder()
        >>> builder.declare("vpc", attributes={"cidr_block": "10.0.0.0/16"})
        >>> builder.declare("subnet", attributes={"vpc_id": ref("vpc")})
        >>> graph = builder.build()
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def declare(
        self,
        id: str,
        kind: Union[NodeKind, str] = NodeKind.RESOURCE,
        attributes: Optional[Dict[str, Any]] = None,
        preconditions: Optional[List[Any]] = None,
    ) -> Node:
        """Declare a node.

        Args:
            id: Unique node id
            kind: NodeKind or its string value
            attributes: Attribute name -> literal value or Reference
            preconditions: Ordered predicates gating materialization

        Returns:
            The declared Node with its references bound to it

        Raises:
            DuplicateIdError: If id was already declared in this builder
        """
        if id in self._nodes:
            raise DuplicateIdError(
                f"Node '{id}' is already declared", context={"node_id": id}
            )
        bound = {
            name: map_references(value, lambda r, n=name: r.bind(id, n))
            for name, value in (attributes or {}).items()
        }
        node = Node(
            id=id,
            kind=NodeKind(kind),
            attributes=bound,
            preconditions=list(preconditions or []),
            order=len(self._nodes),
        )
        self._nodes[id] = node
        return node

    def build(self) -> ResourceGraph:
        """Freeze the declarations into a new ResourceGraph."""
        graph = ResourceGraph()
        for node in self._nodes.values():
            graph.add_node(copy.deepcopy(node))
        return graph
