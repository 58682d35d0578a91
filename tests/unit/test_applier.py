"""Unit tests for planner/applier.py"""

import sys
import unittest
from pathlib import Path

# Add project root and fixtures to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "fixtures"))

from graph_samples import ecs_builder, volume_builder
from planner.applier import LocalBackend, apply_plan, destroy_graph, teardown_batches
from planner.compiler import compile_plan
from planner.model import NodeState, ref
from planner.state import StateStore


class FailingBackend(LocalBackend):
    """LocalBackend that raises for selected node ids."""

    def __init__(self, failing, resources=None):
        super().__init__(resources)
        self.failing = set(failing)

    def apply(self, node, attributes):
        if node.id in self.failing:
            with self._lock:
                self.calls.append(("apply", node.id))
            raise RuntimeError(f"{node.id} rejected")
        return super().apply(node, attributes)

    def destroy(self, node):
        if node.id in self.failing:
            raise RuntimeError(f"{node.id} still in use")
        super().destroy(node)


class OutputlessBackend(LocalBackend):
    def apply(self, node, attributes):
        super().apply(node, attributes)
        return {}


def _applied_ids(backend):
    return [node_id for call, node_id in backend.calls if call == "apply"]


class TestApplyPlan(unittest.TestCase):
    """Test apply_plan() batch execution."""

    def setUp(self):
        self.state = StateStore()
        self.backend = LocalBackend()
        self.report = apply_plan(compile_plan(ecs_builder(), self.state), self.backend, self.state)

    def test_applies_every_node(self):
        self.assertTrue(self.report.ok)
        self.assertEqual(len(self.report.applied), 7)
        self.assertEqual(self.report.batches_completed, 4)
        self.assertFalse(self.report.halted)
        applied = _applied_ids(self.backend)
        self.assertEqual(applied[0], "vpc")
        self.assertEqual(applied[-1], "service")

    def test_outputs_flow_to_dependents(self):
        resources = self.backend.resources
        self.assertEqual(resources["alb_sg"]["vpc_id"], resources["vpc"]["id"])
        edge = resources["edge.alb_sg.egress_to"]
        self.assertEqual(edge["source_id"], resources["alb_sg"]["id"])
        self.assertEqual(edge["target_id"], resources["svc_sg"]["id"])
        self.assertEqual(edge["value"], resources["svc_sg"]["id"])
        self.assertEqual(edge["direction"], "egress")
        self.assertEqual(resources["service"]["load_balancer"], resources["alb"]["arn"])

    def test_state_records_applied_nodes(self):
        self.assertEqual(self.state.state_of("service"), NodeState.APPLIED)
        self.assertEqual(self.state.known()["vpc"], self.backend.resources["vpc"])

    def test_rerun_makes_zero_backend_calls(self):
        backend = LocalBackend(self.backend.resources)
        plan = compile_plan(ecs_builder(), self.state)
        report = apply_plan(plan, backend, self.state)
        self.assertEqual(backend.calls, [])
        self.assertEqual(len(report.skipped), 7)
        self.assertTrue(report.ok)

    def test_changed_outputs_reapply_dependents(self):
        self.backend.calls = []
        plan = compile_plan(ecs_builder(cidr_block="10.1.0.0/16"), self.state)
        report = apply_plan(plan, self.backend, self.state)
        self.assertTrue(report.ok)
        self.assertEqual(_applied_ids(self.backend)[0], "vpc")
        self.assertEqual(set(_applied_ids(self.backend)), {"vpc", "alb_sg", "svc_sg"})
        self.assertIn("service", report.skipped)


class TestApplyFailures(unittest.TestCase):
    """A failing node lets its batch siblings finish, then stops."""

    def test_halt_after_failed_batch(self):
        state = StateStore()
        backend = FailingBackend(["alb_sg"])
        report = apply_plan(compile_plan(ecs_builder(), state), backend, state)

        self.assertFalse(report.ok)
        self.assertTrue(report.halted)
        self.assertEqual(report.batches_completed, 1)
        self.assertEqual(report.failed, ["alb_sg"])
        self.assertIn("svc_sg", report.applied)
        self.assertNotIn("alb", report.results)
        self.assertNotIn("service", report.results)
        self.assertNotIn(("apply", "alb"), backend.calls)

        error = report.errors[0]
        self.assertEqual(error.node_id, "alb_sg")
        self.assertEqual(error.kind, "BackendApplyError")
        self.assertIsInstance(error.__cause__, RuntimeError)
        self.assertEqual(state.state_of("alb_sg"), NodeState.FAILED)
        self.assertEqual(state.state_of("svc_sg"), NodeState.APPLIED)

    def test_rerun_resumes_after_failure(self):
        state = StateStore()
        apply_plan(compile_plan(ecs_builder(), state), FailingBackend(["alb_sg"]), state)

        backend = LocalBackend()
        report = apply_plan(compile_plan(ecs_builder(), state), backend, state)
        self.assertTrue(report.ok)
        self.assertIn("vpc", report.skipped)
        self.assertIn("svc_sg", report.skipped)
        self.assertEqual(_applied_ids(backend)[0], "alb_sg")
        self.assertEqual(state.state_of("service"), NodeState.APPLIED)

    def test_missing_output_fails_dependents(self):
        state = StateStore()
        report = apply_plan(compile_plan(ecs_builder(), state), OutputlessBackend(), state)
        self.assertEqual(sorted(report.failed), ["alb_sg", "svc_sg"])
        self.assertIn("'vpc' did not produce", report.errors[0].message)
        self.assertEqual(report.errors[0].context["attribute"], "vpc_id")


class TestApplyTimePreconditions(unittest.TestCase):
    """Preconditions see the outputs produced earlier in the same run."""

    def setUp(self):
        self.state = StateStore()
        self.backend = LocalBackend()
        # efs never outputs access_point_id, so volume's gate turns false
        self.report = apply_plan(
            compile_plan(volume_builder(with_access_point=True), self.state),
            self.backend,
            self.state,
        )

    def test_gated_node_is_pruned_not_failed(self):
        self.assertTrue(self.report.ok)
        self.assertEqual(self.report.pruned, ["volume", "task"])
        self.assertEqual(sorted(_applied_ids(self.backend)), ["efs", "sidecar"])
        self.assertIsNone(self.state.state_of("volume"))
        self.assertIn("2 pruned", self.report.summary())

    def test_cascade_substitutes_default(self):
        self.assertEqual(self.backend.resources["sidecar"]["volume"], "scratch")

    def test_replan_agrees_with_apply(self):
        plan = compile_plan(volume_builder(with_access_point=True), self.state)
        self.assertNotIn("volume", plan.graph.nodes)
        self.assertTrue(plan.is_noop())

    def test_satisfied_gate_is_applied(self):
        builder = volume_builder(with_access_point=True)
        builder.declare(
            "mount", attributes={"fs": ref("efs")}, preconditions=["ref.efs.arn != null"]
        )
        state = StateStore()
        report = apply_plan(compile_plan(builder, state), LocalBackend(), state)
        self.assertIn("mount", report.applied)
        self.assertNotIn("mount", report.pruned)


class TestDestroy(unittest.TestCase):
    def setUp(self):
        self.state = StateStore()
        self.backend = LocalBackend()
        self.plan = compile_plan(ecs_builder(), self.state)
        apply_plan(self.plan, self.backend, self.state)
        self.backend.calls = []

    def _destroyed(self):
        return [node_id for call, node_id in self.backend.calls if call == "destroy"]

    def test_teardown_batches(self):
        self.assertEqual(
            teardown_batches(self.plan.graph, ["svc_sg"]),
            [["service"], ["edge.svc_sg.ingress_from", "edge.alb_sg.egress_to"], ["svc_sg"]],
        )

    def test_destroy_everything_edges_first(self):
        report = destroy_graph(self.plan.graph, self.backend, self.state)
        self.assertTrue(report.ok)
        order = self._destroyed()
        self.assertEqual(len(order), 7)
        self.assertEqual(order[0], "service")
        self.assertEqual(order[-1], "vpc")
        for edge_id in ["edge.alb_sg.egress_to", "edge.svc_sg.ingress_from"]:
            self.assertLess(order.index(edge_id), order.index("alb_sg"))
            self.assertLess(order.index(edge_id), order.index("svc_sg"))
        self.assertEqual(self.backend.resources, {})
        self.assertEqual(self.state.known(), {})

    def test_destroy_target_takes_dependents(self):
        destroy_graph(self.plan.graph, self.backend, self.state, node_ids=["svc_sg"])
        self.assertEqual(
            sorted(self._destroyed()),
            ["edge.alb_sg.egress_to", "edge.svc_sg.ingress_from", "service", "svc_sg"],
        )
        self.assertEqual(self.state.state_of("alb_sg"), NodeState.APPLIED)

    def test_destroy_skips_absent_nodes(self):
        destroy_graph(self.plan.graph, self.backend, self.state)
        self.backend.calls = []
        report = destroy_graph(self.plan.graph, self.backend, self.state)
        self.assertEqual(self.backend.calls, [])
        self.assertEqual(len(report.skipped), 7)

    def test_destroy_failure_halts(self):
        backend = FailingBackend(["alb"], self.backend.resources)
        report = destroy_graph(self.plan.graph, backend, self.state)
        self.assertEqual(report.failed, ["alb"])
        self.assertTrue(report.halted)
        self.assertEqual(self.state.state_of("vpc"), NodeState.APPLIED)


if __name__ == "__main__":
    unittest.main()
