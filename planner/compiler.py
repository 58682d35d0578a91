"""Planning pipeline for resgraph.

Chains the stages in order:

    Builder -> resolve_references -> split_cycles -> materialize -> build_plan

Structural errors raised by any stage abort the run before anything is
applied.
"""

import logging
from typing import List, Optional

from planner.materializer import materialize
from planner.model import Builder, NodeState, ResourceGraph
from planner.resolver import resolve_references
from planner.scheduler import Plan, build_plan
from planner.splitter import DEFAULT_EDGE_PREFIX, split_cycles
from planner.state import StateStore
from planner.values import Known

logger = logging.getLogger(__name__)


def compile_graph(
    builder: Builder,
    known: Optional[Known] = None,
    edge_prefix: str = DEFAULT_EDGE_PREFIX,
) -> ResourceGraph:
    """Run every compile stage up to (not including) scheduling.

    Args:
        builder: Declarations of this planning run
        known: Outputs of already-applied nodes for precondition evaluation
        edge_prefix: Prefix of generated EdgeResource ids

    Returns:
        Acyclic, materialized ResourceGraph
    """
    graph = builder.build()
    graph = resolve_references(graph)
    graph = split_cycles(graph, edge_prefix)
    graph = materialize(graph, known)
    logger.info(
        f"Compiled {len(graph)} node(s): {len(graph.split_log)} edge resource(s), "
        f"{len(graph.pruned)} pruned"
    )
    return graph


def compile_plan(
    builder: Builder,
    state: Optional[StateStore] = None,
    edge_prefix: str = DEFAULT_EDGE_PREFIX,
) -> Plan:
    """Compile declarations into an apply plan.

    Args:
        builder: Declarations of this planning run
        state: Applied state (empty when None)
        edge_prefix: Prefix of generated EdgeResource ids

    Returns:
        Plan with batches and per-node actions
    """
    state = state or StateStore()
    graph = compile_graph(builder, state.known(), edge_prefix)
    return build_plan(graph, state)


def find_orphans(plan: Plan, state: StateStore) -> List[str]:
    """Ids present in the backend (per state) but no longer in the plan."""
    planned = set(plan.graph.nodes)
    return sorted(
        node_id
        for node_id, record in state.records.items()
        if node_id not in planned
        and record.state in (NodeState.APPLIED, NodeState.STALE)
    )
