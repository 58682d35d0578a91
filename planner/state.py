"""Persistent node state for resgraph.

The StateStore remembers, per node, its lifecycle state, the outputs the
backend reported and the fingerprint of the declaration that was applied.
It is what makes re-planning incremental and re-applying idempotent.
"""

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional

from planner.exceptions import ConfigurationError
from planner.expressions import describe
from planner.model import Node, NodeState, check_transition
from planner.values import Known, render_value

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def fingerprint(node: Node) -> str:
    """SHA-256 of the canonical JSON form of a node declaration."""
    payload = {
        "kind": node.kind.value,
        "attributes": render_value(node.attributes),
        "preconditions": [describe(p) for p in node.preconditions],
    }
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class NodeRecord:
    state: NodeState = NodeState.SCHEDULED
    outputs: Dict[str, Any] = field(default_factory=dict)
    fingerprint: Optional[str] = None
    kind: str = "Resource"
    error: Optional[str] = None


class StateStore:
    """Thread-safe record of applied nodes.

    Only the applier writes here while batches run; the planner reads it.
    """

    def __init__(self, records: Optional[Dict[str, NodeRecord]] = None):
        self.records: Dict[str, NodeRecord] = dict(records or {})
        self._lock = threading.Lock()

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.records

    def get(self, node_id: str) -> Optional[NodeRecord]:
        return self.records.get(node_id)

    def state_of(self, node_id: str) -> Optional[NodeState]:
        record = self.records.get(node_id)
        return record.state if record else None

    def known(self) -> Known:
        """Outputs of every node that currently exists in the backend."""
        return {
            node_id: dict(record.outputs)
            for node_id, record in self.records.items()
            if record.state in (NodeState.APPLIED, NodeState.STALE)
        }

    def _move(self, node_id: str, new_state: NodeState) -> NodeRecord:
        record = self.records.get(node_id)
        if record is None:
            record = NodeRecord(state=NodeState.SCHEDULED)
            self.records[node_id] = record
        record.state = check_transition(node_id, record.state, new_state)
        return record

    def mark_scheduled(self, node_id: str) -> None:
        with self._lock:
            self._move(node_id, NodeState.SCHEDULED)

    def mark_applied(
        self, node: Node, outputs: Dict[str, Any], node_fingerprint: Optional[str] = None
    ) -> None:
        with self._lock:
            record = self._move(node.id, NodeState.APPLIED)
            record.outputs = dict(outputs)
            record.fingerprint = node_fingerprint or fingerprint(node)
            record.kind = node.kind.value
            record.error = None

    def mark_failed(self, node_id: str, error: Exception) -> None:
        with self._lock:
            record = self._move(node_id, NodeState.FAILED)
            record.error = str(error)

    def mark_stale(self, node_ids: Iterable[str]) -> None:
        with self._lock:
            for node_id in node_ids:
                if self.state_of(node_id) in (NodeState.APPLIED, NodeState.STALE):
                    self._move(node_id, NodeState.STALE)

    def mark_destroyed(self, node_id: str) -> None:
        with self._lock:
            record = self._move(node_id, NodeState.DESTROYED)
            record.outputs = {}

    def record_drift(self, node_id: str, outputs: Dict[str, Any]) -> bool:
        """Store changed outputs for an applied node.

        Returns:
            True if the outputs differ from the recorded ones (node is now Stale)
        """
        with self._lock:
            record = self.records.get(node_id)
            if record is None or record.state not in (
                NodeState.APPLIED,
                NodeState.STALE,
            ):
                return False
            if record.outputs == outputs:
                return False
            record.outputs = dict(outputs)
            record.state = check_transition(node_id, record.state, NodeState.STALE)
            logger.info(f"Drift detected on {node_id}")
            return True

    def to_dict(self) -> Dict[str, Any]:
        records = {}
        for node_id, record in sorted(self.records.items()):
            data = asdict(record)
            data["state"] = record.state.value
            records[node_id] = data
        return {"version": STATE_VERSION, "nodes": records}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateStore":
        if data.get("version") != STATE_VERSION:
            raise ConfigurationError(
                f"Unsupported state file version {data.get('version')}",
                context={"expected": STATE_VERSION},
            )
        records = {}
        for node_id, raw in data.get("nodes", {}).items():
            raw = dict(raw)
            raw["state"] = NodeState(raw["state"])
            records[node_id] = NodeRecord(**raw)
        return cls(records)

    def save(self, path: str) -> None:
        with self._lock:
            payload = self.to_dict()
        with open(path, "w") as f:
            json.dump(payload, f, indent=4, sort_keys=True)
        logger.debug(f"State written to {path}")

    @classmethod
    def load(cls, path: str) -> "StateStore":
        """Load a state file; a missing file gives an empty store."""
        if not os.path.exists(path):
            logger.debug(f"No state file at {path}, starting empty")
            return cls()
        with open(path, "r") as f:
            try:
                data = json.load(f)
            except ValueError as e:
                raise ConfigurationError(
                    f"State file {path} is not valid JSON: {e}", context={"path": path}
                ) from e
        return cls.from_dict(data)
