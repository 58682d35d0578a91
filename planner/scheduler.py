"""Topological scheduler for resgraph.

Orders the acyclic graph into apply batches with Kahn's algorithm. Every
node's dependencies sit in a strictly earlier batch, and nodes inside one
batch are ordered by declaration order so plan diffs are reproducible.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from planner.exceptions import SchedulerInternalError
from planner.model import NodeState, ResourceGraph
from planner.state import StateStore, fingerprint
from planner.values import Known, render_value, resolve_attributes

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
NOOP = "noop"


def schedule(graph: ResourceGraph) -> List[List[str]]:
    """Group nodes into dependency-ordered batches.

    Args:
        graph: Resolved ResourceGraph with no cycles

    Returns:
        List of batches, each a list of node ids in declaration order

    Raises:
        SchedulerInternalError: If nodes remain but none is ready (a cycle)
    """
    in_degree = {node_id: len(graph.depends_on.get(node_id, [])) for node_id in graph.nodes}
    ready = [node_id for node_id in graph.ordered_ids() if in_degree[node_id] == 0]
    batches: List[List[str]] = []
    while ready:
        batch = sorted(ready, key=lambda n: graph.nodes[n].order)
        batches.append(batch)
        ready = []
        for node_id in batch:
            for child in graph.dependents.get(node_id, []):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    ready.append(child)

    scheduled = sum(len(batch) for batch in batches)
    if scheduled != len(graph.nodes):
        remaining = [n for n in graph.ordered_ids() if in_degree[n] > 0]
        raise SchedulerInternalError(
            f"Scheduler stalled with {len(remaining)} node(s) in a cycle: "
            f"{', '.join(remaining)}",
            context={"node_id": remaining[0], "remaining": ",".join(remaining)},
        )
    logger.info(f"Scheduled {scheduled} node(s) into {len(batches)} batch(es)")
    return batches


def compute_action(graph: ResourceGraph, node_id: str, state: StateStore) -> str:
    """Decide whether a node needs a create, an update or nothing."""
    record = state.get(node_id)
    if record is None or record.state == NodeState.DESTROYED:
        return CREATE
    if record.state == NodeState.FAILED:
        return UPDATE if record.outputs else CREATE
    if record.state == NodeState.STALE:
        return UPDATE
    if record.fingerprint != fingerprint(graph.nodes[node_id]):
        return UPDATE
    return NOOP


def enter_scheduled(graph: ResourceGraph, node_id: str) -> None:
    """Move a graph node to Scheduled, through Stale when it was Applied."""
    node = graph.nodes[node_id]
    if node.state == NodeState.APPLIED:
        node.set_state(NodeState.STALE)
    node.set_state(NodeState.SCHEDULED)


@dataclass
class Plan:
    """Ordered batches plus the action each node needs."""

    graph: ResourceGraph
    batches: List[List[str]]
    actions: Dict[str, str] = field(default_factory=dict)

    def __iter__(self):
        return iter(self.batches)

    def node_ids(self) -> List[str]:
        return [node_id for batch in self.batches for node_id in batch]

    def batch_index(self, node_id: str) -> int:
        for index, batch in enumerate(self.batches):
            if node_id in batch:
                return index
        raise KeyError(node_id)

    def pending_batches(self) -> List[List[str]]:
        """Batches restricted to nodes whose action is not a no-op."""
        pending = []
        for batch in self.batches:
            members = [n for n in batch if self.actions.get(n, CREATE) != NOOP]
            if members:
                pending.append(members)
        return pending

    @property
    def changes(self) -> int:
        return sum(len(batch) for batch in self.pending_batches())

    def is_noop(self) -> bool:
        return self.changes == 0

    def destroy_order(self) -> List[str]:
        """Reverse topological order, EdgeResources before their endpoints."""
        order = []
        for batch in reversed(self.batches):
            order.extend(reversed(batch))
        return order

    def to_dict(self, known: Optional[Known] = None) -> Dict[str, Any]:
        """Serializable dry-run form of the plan."""
        batches = []
        for batch in self.batches:
            entries = []
            for node_id in batch:
                node = self.graph.nodes[node_id]
                entries.append(
                    {
                        "id": node_id,
                        "kind": node.kind.value,
                        "action": self.actions.get(node_id, CREATE),
                        "depends_on": list(self.graph.depends_on.get(node_id, [])),
                        "attributes": render_value(
                            resolve_attributes(self.graph, node_id, known)
                        ),
                    }
                )
            batches.append(entries)
        return {
            "batches": batches,
            "split_log": list(self.graph.split_log),
            "prune_log": list(self.graph.prune_log),
        }


def build_plan(graph: ResourceGraph, state: Optional[StateStore] = None) -> Plan:
    """Schedule the graph and compute per-node actions against state."""
    state = state or StateStore()
    batches = schedule(graph)
    actions = {}
    for batch in batches:
        for node_id in batch:
            enter_scheduled(graph, node_id)
            actions[node_id] = compute_action(graph, node_id, state)
    plan = Plan(graph=graph, batches=batches, actions=actions)
    logger.info(f"Plan has {plan.changes} change(s)")
    return plan


def replan(
    plan: Plan, changed_node_ids: Iterable[str], state: Optional[StateStore] = None
) -> Plan:
    """Re-plan only the sub-DAG reachable from nodes whose values changed.

    The changed nodes and their transitive dependents become Stale and are
    returned in their original batch order; every other node is left out.

    Args:
        plan: Previously built plan
        changed_node_ids: Nodes whose resolved attribute values changed
        state: Optional StateStore to mark affected nodes Stale in

    Returns:
        A new Plan over the affected nodes only
    """
    graph = plan.graph
    changed = [node_id for node_id in changed_node_ids if node_id in graph.nodes]
    affected = set(changed) | set(graph.transitive_dependents(changed))
    if state is not None:
        state.mark_stale(affected)

    batches = []
    actions = {}
    for batch in plan.batches:
        members = [node_id for node_id in batch if node_id in affected]
        if not members:
            continue
        for node_id in members:
            enter_scheduled(graph, node_id)
            record = state.get(node_id) if state is not None else None
            actions[node_id] = UPDATE if record and record.outputs else CREATE
        batches.append(members)
    logger.info(
        f"Re-planned {len(affected)} node(s) from {len(changed)} changed node(s)"
    )
    return Plan(graph=graph, batches=batches, actions=actions)
