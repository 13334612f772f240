"""
Tests for the flowsim command line.
"""

import json
import logging

import pytest

from flowsim.cli import main
from flowsim.graph.mutations import new_node
from flowsim.graph.node import NodeType, Position
from flowsim.graph.store import GraphStore
from flowsim.graph.transfer import save_document


@pytest.fixture
def workflow_file(tmp_path):
    store = GraphStore()
    store.add_node(new_node(NodeType.START, Position(), node_id="start"))
    store.append_after("start", NodeType.CONDITION, node_id="branch")
    store.update_node("branch", config={"expression": "amount > 5000"})
    store.append_after("branch", NodeType.APPROVAL, node_id="approval")
    store.append_after("branch", NodeType.NOTIFICATION, node_id="notify")
    store.append_after("approval", NodeType.END, node_id="end")
    store.connect("notify", "end")
    return save_document(store, tmp_path / "workflow.json")


def run_cli(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    return exc_info.value.code


class TestRun:
    def test_run_prints_trace(self, workflow_file, capsys):
        code = run_cli("run", str(workflow_file), "--input", '{"amount": 8500}')

        out = capsys.readouterr().out
        assert code == 0
        assert "✓ Approval (approval)" in out
        assert "Notification" not in out
        assert "Status: SUCCESS" in out

    def test_run_json(self, workflow_file, capsys):
        code = run_cli("run", str(workflow_file), "-i", '{"amount": 1}', "--json")

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert [e["node_id"] for e in result["log"]] == ["start", "branch", "notify", "end"]
        assert result["status"] == "completed"

    def test_run_step_budget(self, workflow_file, capsys):
        code = run_cli("run", str(workflow_file), "--max-steps", "2")

        out = capsys.readouterr().out
        assert code == 1
        assert "FAILED (aborted)" in out

    def test_log_level_from_config(self, workflow_file, isolated_config, capsys):
        isolated_config.write_text(json.dumps({"simulator": {"log_level": "error"}}))

        run_cli("run", str(workflow_file))
        assert logging.getLogger().level == logging.ERROR

        run_cli("run", str(workflow_file), "--verbose")
        assert logging.getLogger().level == logging.INFO

    def test_bad_input_json(self, workflow_file, capsys):
        code = run_cli("run", str(workflow_file), "--input", "{oops")

        assert code == 1
        assert "Error parsing --input JSON" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        code = run_cli("run", str(tmp_path / "nope.json"))

        assert code == 1
        assert "Cannot read" in capsys.readouterr().err


class TestInspect:
    def test_validate_clean(self, workflow_file, capsys):
        code = run_cli("validate", str(workflow_file))

        out = capsys.readouterr().out
        assert code == 0
        assert "✓ Workflow is valid" in out

    def test_validate_reports_errors(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"nodes": [{"id": "e", "type": "end"}], "edges": []}))

        code = run_cli("validate", str(path), "--json")

        report = json.loads(capsys.readouterr().out)
        assert code == 1
        assert report["valid"] is False
        assert report["summary"]["error_count"] == 1

    def test_info(self, workflow_file, capsys):
        code = run_cli("info", str(workflow_file), "--json")

        info = json.loads(capsys.readouterr().out)
        assert code == 0
        assert [n["id"] for n in info["nodes"]] == ["start", "branch", "approval", "notify", "end"]
        assert info["active_category_id"] == "general"

    def test_variables(self, workflow_file, capsys):
        code = run_cli("variables", str(workflow_file), "end")

        out = capsys.readouterr().out
        assert code == 0
        assert "{{nodes.branch.result}}" in out
        assert "{{system.execution_id}}" in out

    def test_variables_unknown_node(self, workflow_file, capsys):
        code = run_cli("variables", str(workflow_file), "ghost")

        assert code == 1
        assert "not found" in capsys.readouterr().err
