"""Unit tests for output helpers and plan drawing."""

import json

from graph_samples import ecs_builder, volume_builder
from planner.compiler import compile_plan
from planner.drawing import build_digraph, render_plan
from planner.exceptions import DanglingReferenceError
from planner.helpers import export_json, graphdict, output_error, output_plan


class TestGraphdict:
    def test_sorted_adjacency(self):
        plan = compile_plan(ecs_builder())
        result = graphdict(plan.graph)
        assert list(result) == sorted(result)
        assert result["service"] == ["alb", "svc_sg"]
        assert result["edge.alb_sg.egress_to"] == ["alb_sg", "svc_sg"]
        assert result["vpc"] == []


class TestExportJson:
    def test_adds_extension(self, tmp_path):
        outfile = export_json({"a": [1, 2]}, str(tmp_path / "plan"))
        assert outfile.endswith("plan.json")
        with open(outfile) as f:
            assert json.load(f) == {"a": [1, 2]}


class TestOutputPlan:
    def test_listing(self, capsys):
        output_plan(compile_plan(volume_builder()))
        out = capsys.readouterr().out
        assert "Batch 1:" in out
        assert "+ efs" in out
        assert "Pruned nodes:" in out
        assert "volume:" in out
        assert "Plan: 2 to change, 0 unchanged." in out

    def test_orphans_warned(self, capsys):
        output_plan(compile_plan(ecs_builder()), orphans=["old_bucket"])
        out = capsys.readouterr().out
        assert "old_bucket exists in state but is no longer declared" in out
        assert "Cycle splits:" in out


class TestOutputError:
    def test_kind_and_node(self, capsys):
        output_error(DanglingReferenceError("missing", context={"node_id": "subnet"}))
        out = capsys.readouterr().out
        assert "ERROR DanglingReference [subnet]" in out


class TestDrawing:
    def test_clusters_per_batch(self):
        dot = build_digraph(compile_plan(ecs_builder()))
        source = dot.source
        for index in range(4):
            assert f"cluster_batch_{index}" in source
        assert "cluster_batch_4" not in source
        assert "style=dashed" in source

    def test_pruned_nodes_omitted(self):
        source = build_digraph(compile_plan(volume_builder())).source
        assert "sidecar" in source
        assert "volume" not in source
        assert "task" not in source

    def test_render_dot_source(self, tmp_path):
        path = render_plan(compile_plan(ecs_builder()), str(tmp_path / "plan"), "dot")
        assert path.endswith("plan.dot")
        with open(path) as f:
            assert "digraph resgraph" in f.read()
