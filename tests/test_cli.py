"""Tests for the resgraph command line interface."""

import json
import os
from unittest.mock import patch

from click.testing import CliRunner

from resgraph import _validate_source, cli

DECLARATIONS = """
resources:
  vpc:
    attributes:
      cidr_block: 10.0.0.0/16
  alb_sg:
    attributes:
      vpc_id: "${ref.vpc.id}"
      egress_to: "${ref.svc_sg.id:egress}"
  svc_sg:
    attributes:
      vpc_id: "${ref.vpc.id}"
      ingress_from: "${ref.alb_sg.id:ingress}"
"""


def _write(name: str, content: str) -> str:
    with open(name, "w") as f:
        f.write(content)
    return name


class TestValidateSource:
    def test_rejects_tf_file(self):
        with patch("sys.exit") as mock_exit:
            with patch("click.echo") as mock_echo:
                _validate_source(["./graphs", "main.tf"])
                mock_exit.assert_called_once()
                assert "main.tf" in str(mock_echo.call_args)

    def test_accepts_folders_and_urls(self):
        with patch("sys.exit") as mock_exit:
            _validate_source(["./graphs", "https://github.com/user/repo//graphs"])
            mock_exit.assert_not_called()


class TestCommands:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "resgraph" in result.output

    def test_plan(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            result = runner.invoke(cli, ["plan", "--source", "graph.yml", "--outfile", "plan"])
            assert result.exit_code == 0, result.output
            assert "Batch 3:" in result.output
            assert "edge.alb_sg.egress_to" in result.output
            with open("plan.json") as f:
                data = json.load(f)
            assert [entry["id"] for entry in data["batches"][0]] == ["vpc"]
            assert not os.path.exists("resgraph.state.json")

    def test_apply_then_noop(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            result = runner.invoke(cli, ["apply", "--source", "graph.yml"])
            assert result.exit_code == 0, result.output
            assert "5 applied" in result.output
            with open("resgraph.state.json") as f:
                state = json.load(f)
            assert state["nodes"]["edge.svc_sg.ingress_from"]["state"] == "Applied"

            result = runner.invoke(cli, ["apply", "--source", "graph.yml"])
            assert result.exit_code == 0, result.output
            assert "Nothing to apply." in result.output

    def test_destroy(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            runner.invoke(cli, ["apply", "--source", "graph.yml", "--state", "s.json"])
            result = runner.invoke(cli, ["destroy", "--source", "graph.yml", "--state", "s.json"])
            assert result.exit_code == 0, result.output
            assert "5 destroyed" in result.output
            with open("s.json") as f:
                states = {n["state"] for n in json.load(f)["nodes"].values()}
            assert states == {"Destroyed"}

    def test_graphdata(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            result = runner.invoke(
                cli, ["graphdata", "--source", "graph.yml", "--outfile", "graph"]
            )
            assert result.exit_code == 0, result.output
            with open("graph.json") as f:
                data = json.load(f)
            assert data["graph"]["alb_sg"] == ["vpc"]
            assert len(data["split_log"]) == 2

    def test_draw_dot(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            result = runner.invoke(
                cli, ["draw", "--source", "graph.yml", "--format", "dot"]
            )
            assert result.exit_code == 0, result.output
            assert os.path.exists("plan.dot")

    def test_structural_error_exits_with_kind(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write(
                "graph.yml",
                "resources:\n  subnet:\n    attributes:\n      vpc_id: '${ref.vpc.id}'\n",
            )
            result = runner.invoke(cli, ["plan", "--source", "graph.yml"])
            assert result.exit_code == 1
            assert "ERROR DanglingReference [subnet]" in result.output

    def test_bad_config_exits(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            _write("resgraph.yml", "max_workers: lots\n")
            result = runner.invoke(cli, ["plan", "--source", "graph.yml"])
            assert result.exit_code == 1
            assert "ConfigurationError" in result.output

    def test_unknown_backend_exits(self):
        runner = CliRunner()
        with runner.isolated_filesystem():
            _write("graph.yml", DECLARATIONS)
            result = runner.invoke(
                cli, ["apply", "--source", "graph.yml", "--backend", "nowhere:Backend"]
            )
            assert result.exit_code == 1
            assert "Cannot load backend" in result.output
