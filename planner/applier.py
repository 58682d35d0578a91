"""Convergence applier for resgraph.

This is the boundary to the external resource backend. A plan is applied
batch after batch; members of one batch run concurrently. When a node fails
its in-flight siblings are allowed to finish, then no further batch starts.
Retry policy is left to the caller: re-running the same plan skips every
node already Applied with an unchanged declaration.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from planner.exceptions import BackendApplyError, PreconditionEvaluationError, ResGraphError
from planner.expressions import describe
from planner.materializer import failed_precondition, prune_node
from planner.model import ABSENT, UNKNOWN, Node, NodeState, ResourceGraph, iter_references
from planner.resolver import resolve_references
from planner.scheduler import CREATE, NOOP, UPDATE, Plan, enter_scheduled, schedule
from planner.state import StateStore, fingerprint
from planner.values import reference_value, render_value, resolve_attributes

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class Backend(ABC):
    """Resource backend the applier talks to.

    Both calls may be slow; neither is retried by the applier.
    """

    @abstractmethod
    def apply(self, node: Node, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update node with fully resolved attributes; return its outputs."""

    @abstractmethod
    def destroy(self, node: Node) -> None:
        """Delete node from the backend."""


class LocalBackend(Backend):
    """In-process backend that simulates provisioning.

    Echoes attributes back as outputs and fabricates stable id/arn values,
    which is enough to drive plans end to end without a cloud account.
    """

    def __init__(self, resources: Optional[Dict[str, Dict[str, Any]]] = None):
        self.resources: Dict[str, Dict[str, Any]] = dict(resources or {})
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def apply(self, node: Node, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("apply", node.id))
            existing = self.resources.get(node.id, {})
            digest = hashlib.sha1(node.id.encode("utf-8")).hexdigest()[:8]
            resource_id = existing.get("id", f"{node.id.replace('.', '-')}-{digest}")
            outputs = dict(attributes)
            outputs["id"] = resource_id
            outputs["arn"] = f"arn:resgraph:local:{node.kind.value.lower()}/{resource_id}"
            self.resources[node.id] = outputs
            return dict(outputs)

    def destroy(self, node: Node) -> None:
        with self._lock:
            self.calls.append(("destroy", node.id))
            self.resources.pop(node.id, None)


@dataclass
class NodeResult:
    node_id: str
    action: str
    status: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ResGraphError] = None


@dataclass
class ApplyReport:
    """Per-node outcome of an apply or destroy run."""

    results: Dict[str, NodeResult] = field(default_factory=dict)
    batches_completed: int = 0
    halted: bool = False

    @property
    def errors(self) -> List[ResGraphError]:
        return [r.error for r in self.results.values() if r.error is not None]

    def _with_status(self, status: str) -> List[str]:
        return [n for n, r in self.results.items() if r.status == status]

    @property
    def applied(self) -> List[str]:
        return self._with_status("applied")

    @property
    def destroyed(self) -> List[str]:
        return self._with_status("destroyed")

    @property
    def failed(self) -> List[str]:
        return self._with_status("failed")

    @property
    def skipped(self) -> List[str]:
        return self._with_status("skipped")

    @property
    def pruned(self) -> List[str]:
        return self._with_status("pruned")

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        text = (
            f"{len(self.applied)} applied, {len(self.destroyed)} destroyed, "
            f"{len(self.skipped)} unchanged, {len(self.failed)} failed"
        )
        if self.pruned:
            text += f", {len(self.pruned)} pruned"
        if self.halted:
            text += f" (halted after {self.batches_completed} batch(es))"
        return text


def _input_attributes(graph: ResourceGraph, node: Node, state: StateStore) -> Dict[str, Any]:
    known = state.known()
    attributes = resolve_attributes(graph, node.id, known)
    for name, value in attributes.items():
        if any(leaf is UNKNOWN for leaf in _leaves(value)):
            raise BackendApplyError(
                f"Attribute '{name}' of '{node.id}' is still unknown at apply time",
                context={"node_id": node.id, "attribute": name},
            )
        for reference in iter_references(node.attributes[name]):
            if reference.has_default:
                continue
            if reference_value(graph, reference, known) is ABSENT:
                raise BackendApplyError(
                    f"Attribute '{name}' of '{node.id}' needs output "
                    f"'{reference.to_attribute_name}', which "
                    f"'{reference.to_node_id}' did not produce",
                    context={"node_id": node.id, "attribute": name},
                )
    return render_value(attributes)


def _leaves(value: Any) -> Iterable[Any]:
    if isinstance(value, dict):
        for item in value.values():
            yield from _leaves(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _leaves(item)
    else:
        yield value


def _run_batch(
    members: List[str],
    worker: Callable[[str], NodeResult],
    max_workers: int,
    pbar: tqdm,
) -> List[NodeResult]:
    """Run one batch; every member finishes even if a sibling fails."""
    if not members:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(members)))) as pool:
        futures = [pool.submit(worker, node_id) for node_id in members]
        results = []
        for future in futures:
            results.append(future.result())
            pbar.update(1)
    return results


def apply_plan(
    plan: Plan,
    backend: Backend,
    state: StateStore,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: bool = False,
) -> ApplyReport:
    """Apply a plan batch by batch against backend.

    No-op nodes are skipped unless a dependency's outputs changed during this
    run, in which case they are re-applied as updates.
    Preconditions are evaluated again against the outputs applied so far; a
    node whose precondition turned false is pruned, with the usual cascade.

    Args:
        plan: Plan from build_plan() or replan()
        backend: Backend implementation
        state: StateStore updated with outputs and lifecycle states
        max_workers: Upper bound of concurrent backend calls per batch
        progress: Show a tqdm progress bar

    Returns:
        ApplyReport with a NodeResult for every node considered
    """
    graph = plan.graph
    report = ApplyReport()
    changed_outputs = set()

    def worker(node_id: str) -> NodeResult:
        node = graph.nodes[node_id]
        action = actions[node_id]
        record = state.get(node_id)
        previous = dict(record.outputs) if record else {}
        try:
            state.mark_scheduled(node_id)
            attributes = _input_attributes(graph, node, state)
            outputs = backend.apply(node, attributes)
        except BackendApplyError as error:
            state.mark_failed(node_id, error)
            return NodeResult(node_id, action, "failed", error=error)
        except Exception as e:
            error = BackendApplyError(
                f"Backend failed to {action} '{node_id}': {e}",
                context={"node_id": node_id, "action": action},
            )
            error.__cause__ = e
            state.mark_failed(node_id, error)
            return NodeResult(node_id, action, "failed", error=error)
        state.mark_applied(node, outputs, fingerprint(node))
        if outputs != previous:
            with lock:
                changed_outputs.add(node_id)
        return NodeResult(node_id, action, "applied", outputs=dict(outputs))

    lock = threading.Lock()
    actions: Dict[str, str] = {}
    with tqdm(total=len(plan.node_ids()), disable=not progress, leave=False) as pbar:
        for index, batch in enumerate(plan.batches):
            members = []
            results = []
            for node_id in batch:
                action = plan.actions.get(node_id, CREATE)
                held = _hold_back(graph, node_id, action, state)
                if held is not None:
                    results.append(held)
                    pbar.update(1)
                    continue
                upstream_changed = any(
                    dep in changed_outputs for dep in graph.depends_on.get(node_id, [])
                )
                if action == NOOP and not upstream_changed:
                    report.results[node_id] = NodeResult(node_id, NOOP, "skipped")
                    enter_scheduled(graph, node_id)
                    graph.nodes[node_id].set_state(NodeState.APPLIED)
                    pbar.update(1)
                    continue
                actions[node_id] = UPDATE if action == NOOP else action
                enter_scheduled(graph, node_id)
                members.append(node_id)

            logger.info(f"Batch {index + 1}/{len(plan.batches)}: {len(members)} node(s)")
            results.extend(_run_batch(members, worker, max_workers, pbar))
            for result in results:
                report.results[result.node_id] = result
                if result.status == "pruned":
                    continue
                node = graph.nodes[result.node_id]
                if result.status == "applied":
                    node.set_state(NodeState.APPLIED)
                else:
                    node.set_state(NodeState.FAILED)
                    logger.error(str(result.error))
            if any(r.status == "failed" for r in results):
                report.halted = index + 1 < len(plan.batches)
                break
            report.batches_completed += 1
    logger.info(f"Apply finished: {report.summary()}")
    return report


def _hold_back(
    graph: ResourceGraph, node_id: str, action: str, state: StateStore
) -> Optional[NodeResult]:
    """Re-check a node against the outputs applied so far in this run.

    Returns a pruned or failed NodeResult when the node must not reach the
    backend, None when it may proceed.
    """
    if node_id not in graph.nodes:
        # removed by a cascade earlier in this run
        return NodeResult(node_id, action, "pruned")
    node = graph.nodes[node_id]
    if not node.preconditions:
        return None
    try:
        failed = failed_precondition(graph, node, state.known())
    except PreconditionEvaluationError as error:
        enter_scheduled(graph, node_id)
        state.mark_failed(node_id, error)
        return NodeResult(node_id, action, "failed", error=error)
    if failed is None:
        return None
    prune_node(graph, node_id, f"precondition '{describe(failed)}' is false after apply")
    resolve_references(graph)
    return NodeResult(node_id, action, "pruned")


def teardown_batches(
    graph: ResourceGraph, node_ids: Optional[Iterable[str]] = None
) -> List[List[str]]:
    """Destroy batches in reverse topological order.

    With node_ids, their transitive dependents are torn down too, so the
    EdgeResources of a cycle group always go before either endpoint.
    """
    if node_ids is None:
        selected = set(graph.nodes)
    else:
        start = [n for n in node_ids if n in graph.nodes]
        selected = set(start) | set(graph.transitive_dependents(start))
    batches = []
    for batch in reversed(schedule(graph)):
        members = [n for n in reversed(batch) if n in selected]
        if members:
            batches.append(members)
    return batches


def destroy_graph(
    graph: ResourceGraph,
    backend: Backend,
    state: StateStore,
    node_ids: Optional[Iterable[str]] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: bool = False,
) -> ApplyReport:
    """Tear down applied nodes, dependents first.

    Nodes with no backend presence in state are skipped. The same halt rule
    as apply_plan applies: a failure stops every later batch.
    """
    report = ApplyReport()
    batches = teardown_batches(graph, node_ids)

    def worker(node_id: str) -> NodeResult:
        node = graph.nodes[node_id]
        try:
            backend.destroy(node)
        except Exception as e:
            error = BackendApplyError(
                f"Backend failed to destroy '{node_id}': {e}",
                context={"node_id": node_id, "action": "destroy"},
            )
            error.__cause__ = e
            return NodeResult(node_id, "destroy", "failed", error=error)
        state.mark_destroyed(node_id)
        return NodeResult(node_id, "destroy", "destroyed")

    total = sum(len(b) for b in batches)
    with tqdm(total=total, disable=not progress, leave=False) as pbar:
        for index, batch in enumerate(batches):
            members = []
            for node_id in batch:
                if state.state_of(node_id) in (None, NodeState.DESTROYED):
                    report.results[node_id] = NodeResult(node_id, "destroy", "skipped")
                    pbar.update(1)
                    continue
                members.append(node_id)
            results = _run_batch(members, worker, max_workers, pbar)
            for result in results:
                report.results[result.node_id] = result
                if result.error is not None:
                    logger.error(str(result.error))
            if any(r.status == "failed" for r in results):
                report.halted = index + 1 < len(batches)
                break
            report.batches_completed += 1
    logger.info(f"Destroy finished: {report.summary()}")
    return report
