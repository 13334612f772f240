"""
Tests for the Simulator execution paths: branching, fan-out, loops, failures
and the step budget.
"""

import json

import pytest

from flowsim.config import SimulatorConfig
from flowsim.graph.edge import LOOP_INPUT, Edge
from flowsim.graph.executor import Simulator
from flowsim.graph.mutations import new_node
from flowsim.graph.node import Node, NodeType, Position
from flowsim.graph.store import GraphStore
from flowsim.graph.stubs import simulate_action
from flowsim.observability import get_trace_context, set_trace_context
from flowsim.schemas.execution import AbortReason, NodeExecutionStatus, RunStatus, StepStatus


def make_config(**overrides) -> SimulatorConfig:
    values = {
        "max_steps": 200,
        "default_payload": {"order_id": "ORD-2024-001", "amount": 8500},
        "loop_concurrency": 10,
        "log_level": "INFO",
    }
    values.update(overrides)
    return SimulatorConfig(**values)


@pytest.fixture
def simulator():
    return Simulator(make_config())


def approval_workflow() -> GraphStore:
    """Start -> Branch(amount > 5000) -> true: Approval -> End / false: Notification -> End"""
    store = GraphStore(config=make_config())
    store.add_node(new_node(NodeType.START, Position(x=0, y=0), node_id="start"))
    store.append_after("start", NodeType.CONDITION, node_id="branch")
    store.update_node("branch", label="Branch", config={"expression": "amount > 5000"})
    store.append_after("branch", NodeType.APPROVAL, node_id="approval")
    store.append_after("branch", NodeType.NOTIFICATION, node_id="notify")
    store.append_after("approval", NodeType.END, node_id="end")
    store.connect("notify", "end")
    return store


def loop_workflow(**loop_config) -> GraphStore:
    """Start -> Loop(body: step) -> End"""
    store = GraphStore(config=make_config())
    store.add_node(new_node(NodeType.START, Position(x=0, y=0), node_id="start"))
    store.add_node(new_node(NodeType.LOOP, Position(x=0, y=150), node_id="loop"))
    store.connect("start", "loop", target_handle=LOOP_INPUT)
    store.update_node("loop", config={"target_array": "payload.items", **loop_config})
    store.append_after("loop", NodeType.DATA_OP, inside=True, node_id="step")
    store.update_node("step", config={"source": "{{loop.item}}"})
    store.append_after("loop", NodeType.END, node_id="end")
    return store


# ---- Branching ----


@pytest.mark.asyncio
async def test_large_amount_takes_true_branch():
    store = approval_workflow()

    result = await store.run_simulation({"amount": 8500})

    assert [e.node_label for e in result.log] == ["Start", "Branch", "Approval", "End"]
    assert all(e.status == StepStatus.SUCCESS for e in result.log)
    assert result.log[1].output["result"] is True
    assert "notify" not in result.visited()
    assert result.status == RunStatus.COMPLETED
    assert result.success is True


@pytest.mark.asyncio
async def test_small_amount_takes_false_branch():
    store = approval_workflow()

    result = await store.run_simulation({"amount": 100})

    assert result.visited() == ["start", "branch", "notify", "end"]
    assert result.log[1].output == {"result": False, "next_path": "false"}
    assert "approval" not in result.visited()


@pytest.mark.asyncio
async def test_condition_groups_take_precedence_over_expression():
    store = approval_workflow()
    store.update_node(
        "branch",
        config={
            "condition_groups": [
                {
                    "logicalOperator": "AND",
                    "conditions": [
                        {"variable": "payload.region", "operator": "==", "value": "EU"},
                    ],
                }
            ]
        },
    )

    result = await store.run_simulation({"amount": 8500, "region": "US"})

    assert "notify" in result.visited()
    assert "approval" not in result.visited()


@pytest.mark.asyncio
async def test_broken_expression_fails_step_and_stops_path():
    store = approval_workflow()
    store.update_node("branch", config={"expression": "amount >"})

    result = await store.run_simulation({"amount": 8500})

    assert result.visited() == ["start", "branch"]
    failed = result.log[1]
    assert failed.status == StepStatus.FAILED
    assert failed.error_message
    assert result.status_map["branch"] == NodeExecutionStatus.FAILED
    assert result.status == RunStatus.COMPLETED
    assert result.success is False


# ---- Payload and variables ----


@pytest.mark.asyncio
async def test_start_node_dev_input_is_default_payload():
    store = approval_workflow()
    store.update_node("start", config={"dev_input": json.dumps({"amount": 100})})

    result = await store.run_simulation()

    assert result.log[0].output == {"amount": 100}
    assert "notify" in result.visited()


@pytest.mark.asyncio
async def test_configured_default_payload_when_nothing_supplied():
    store = approval_workflow()

    result = await store.run_simulation()

    assert result.log[0].output == {"order_id": "ORD-2024-001", "amount": 8500}


@pytest.mark.asyncio
async def test_invalid_json_payload_passes_through_with_warning():
    store = approval_workflow()

    result = await store.run_simulation("{not json")

    start = result.log[0]
    assert start.output == "{not json"
    assert start.warnings
    assert start.status == StepStatus.SUCCESS


@pytest.mark.asyncio
async def test_unresolved_reference_is_warning_not_failure():
    store = approval_workflow()
    store.update_node("approval", config={"form_title": "Order {{payload.missing}}"})

    result = await store.run_simulation({"amount": 8500})

    approval = result.entries_for("approval")[0]
    assert approval.status == StepStatus.SUCCESS
    assert approval.input["form_title"] == "Order undefined"
    assert any("payload.missing" in w for w in approval.warnings)


@pytest.mark.asyncio
async def test_upstream_outputs_are_resolved(simulator):
    nodes = [
        new_node(NodeType.START, Position(), node_id="start"),
        Node(
            id="api",
            type=NodeType.API_CALL,
            config={"url": "https://api.example.com/orders/{{payload.order_id}}"},
        ),
        Node(
            id="end",
            type=NodeType.END,
            config={"outputs": [{"key": "status", "value": "{{nodes.api.status}}"}]},
        ),
    ]
    edges = [
        Edge(id="e1", source="start", target="api"),
        Edge(id="e2", source="api", target="end"),
    ]

    result = await simulator.run(nodes, edges, {"order_id": "A-1"})

    api = result.entries_for("api")[0]
    assert api.output["data"]["url"] == "https://api.example.com/orders/A-1"
    assert result.entries_for("end")[0].output == {"status": 200}
    assert result.node_outputs["api"]["status"] == 200


# ---- Parallel fan-out ----


@pytest.mark.asyncio
async def test_failed_branch_does_not_cancel_sibling():
    store = GraphStore(config=make_config())
    store.add_node(new_node(NodeType.START, Position(), node_id="start"))
    store.append_after("start", NodeType.PARALLEL, node_id="fork")
    store.append_after("fork", NodeType.SCRIPT, node_id="ok")
    # A knowledge retrieval step without a dataset fails
    store.append_after("fork", NodeType.KNOWLEDGE_RETRIEVAL, node_id="broken")
    store.append_after("ok", NodeType.NOTIFICATION, node_id="ok_next")
    store.append_after("broken", NodeType.END, node_id="never")

    result = await store.run_simulation({"amount": 1})

    assert result.visited() == ["start", "fork", "ok", "ok_next", "broken"]
    for node_id in ("ok", "ok_next"):
        assert result.entries_for(node_id)[0].status == StepStatus.SUCCESS
    assert result.entries_for("broken")[0].status == StepStatus.FAILED
    assert "never" not in result.visited()
    assert result.failed_steps == 1


def api_and_approval_fork() -> GraphStore:
    """Start -> Parallel -> branch-0: API call -> Notification / branch-1: Approval"""
    store = GraphStore(config=make_config())
    store.add_node(new_node(NodeType.START, Position(), node_id="start"))
    store.append_after("start", NodeType.PARALLEL, node_id="fork")
    store.append_after("fork", NodeType.API_CALL, node_id="api")
    store.append_after("fork", NodeType.APPROVAL, node_id="approval")
    store.append_after("api", NodeType.NOTIFICATION, node_id="after_api")
    store.update_node(
        "api", config={"url": "https://api.example.com", "method": "{{payload.code}}"}
    )
    return store


@pytest.mark.asyncio
async def test_templated_non_string_config_is_coerced():
    store = api_and_approval_fork()
    store.update_node("api", config={"queryParams": [{"key": "q", "value": "1", "enabled": True}]})

    result = await store.run_simulation({"code": 7})

    assert result.status == RunStatus.COMPLETED
    api = result.entries_for("api")[0]
    assert api.status == StepStatus.SUCCESS
    assert api.output["data"]["method"] == "7"
    assert api.output["data"]["url"] == "https://api.example.com?q=1"
    assert result.entries_for("approval")[0].status == StepStatus.SUCCESS


@pytest.mark.asyncio
async def test_unexpected_step_error_fails_only_that_step(monkeypatch):
    def exploding_action(node, effective, context):
        if node.id == "api":
            raise RuntimeError("stub exploded")
        return simulate_action(node, effective, context)

    monkeypatch.setattr("flowsim.graph.executor.simulate_action", exploding_action)
    store = api_and_approval_fork()

    result = await store.run_simulation({"code": 7})

    assert result.status == RunStatus.COMPLETED
    assert result.visited() == ["start", "fork", "api", "approval"]
    api = result.entries_for("api")[0]
    assert api.status == StepStatus.FAILED
    assert api.error_message == "stub exploded"
    assert result.entries_for("approval")[0].status == StepStatus.SUCCESS
    assert result.status_map["api"] == NodeExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_branches_see_outputs_from_before_the_fork_only(simulator):
    nodes = [
        new_node(NodeType.START, Position(), node_id="start"),
        new_node(NodeType.PARALLEL, Position(), node_id="fork"),
        new_node(NodeType.SCRIPT, Position(), node_id="left"),
        Node(id="right", type=NodeType.DATA_OP, config={"source": "{{nodes.left.output}}"}),
    ]
    edges = [
        Edge(id="e1", source="start", target="fork"),
        Edge(id="e2", source="fork", target="left", sourceHandle="branch-0"),
        Edge(id="e3", source="fork", target="right", sourceHandle="branch-1"),
    ]

    result = await simulator.run(nodes, edges, {})

    right = result.entries_for("right")[0]
    assert right.input["source"] == "undefined"
    assert right.warnings


# ---- Loops ----


@pytest.mark.asyncio
async def test_loop_runs_body_per_item_and_aggregates():
    store = loop_workflow()

    result = await store.run_simulation({"items": ["a", "b", "c"]})

    body = result.entries_for("step")
    assert len(body) == 3
    assert [e.loop_index for e in body] == [0, 1, 2]
    loop_entry = result.entries_for("loop")[0]
    assert len(loop_entry.output["result"]) == 3
    assert result.visited() == ["start", "step", "step", "step", "loop", "end"]


@pytest.mark.asyncio
async def test_loop_export_output_selects_iteration_result():
    store = loop_workflow(export_output="nodes.step.result")

    result = await store.run_simulation({"items": [1, 2, 3]})

    assert result.entries_for("loop")[0].output == {"result": [1, 2, 3]}


@pytest.mark.asyncio
async def test_iteration_mode_keeps_index_order():
    store = loop_workflow(mode="iteration", concurrency=2, export_output="loop.item")

    result = await store.run_simulation({"items": [10, 20, 30, 40, 50]})

    assert [e.loop_index for e in result.entries_for("step")] == [0, 1, 2, 3, 4]
    assert result.entries_for("loop")[0].output["result"] == [10, 20, 30, 40, 50]


@pytest.mark.asyncio
async def test_termination_condition_stops_sequential_loop():
    store = loop_workflow(
        termination_conditions=[
            {"conditions": [{"variable": "loop.item", "operator": ">", "value": "2"}]}
        ]
    )

    result = await store.run_simulation({"items": [1, 2, 3, 4]})

    assert len(result.entries_for("step")) == 2
    loop_entries = result.entries_for("loop")
    assert loop_entries[0].output["stopped_at_index"] == 2
    assert len(loop_entries[-1].output["result"]) == 2


@pytest.mark.asyncio
async def test_loop_over_non_array_fails():
    store = loop_workflow()

    result = await store.run_simulation({"items": "not-a-list"})

    loop_entry = result.entries_for("loop")[0]
    assert loop_entry.status == StepStatus.FAILED
    assert "not an array" in loop_entry.error_message
    assert "end" not in result.visited()


@pytest.mark.asyncio
async def test_loop_body_can_read_outer_outputs():
    store = loop_workflow()
    store.update_node("step", config={"source": "{{payload.prefix}}-{{loop.index}}"})

    result = await store.run_simulation({"items": ["x", "y"], "prefix": "row"})

    outputs = [e.output["result"] for e in result.entries_for("step")]
    assert outputs == ["row-0", "row-1"]


@pytest.mark.asyncio
async def test_nested_loops_stack_their_frames():
    store = GraphStore(config=make_config())
    store.add_node(new_node(NodeType.START, Position(), node_id="start"))
    store.add_node(new_node(NodeType.LOOP, Position(x=0, y=150), node_id="outer"))
    store.connect("start", "outer", target_handle=LOOP_INPUT)
    store.update_node("outer", config={"target_array": "payload.rows"})
    store.append_after("outer", NodeType.LOOP, inside=True, node_id="inner")
    store.update_node("inner", config={"target_array": "loop.item"})
    store.append_after("inner", NodeType.DATA_OP, inside=True, node_id="cell")
    store.update_node("cell", config={"source": "{{loop.frames}}"})
    store.append_after("outer", NodeType.END, node_id="end")

    result = await store.run_simulation({"rows": [["a", "b"], ["c"]]})

    assert result.visited() == ["start", "cell", "cell", "inner", "cell", "inner", "outer", "end"]
    cells = result.entries_for("cell")
    assert [e.loop_index for e in cells] == [0, 1, 0]
    assert [e.output["result"] for e in cells] == [
        [{"item": ["a", "b"], "index": 0}, {"item": "a", "index": 0}],
        [{"item": ["a", "b"], "index": 0}, {"item": "b", "index": 1}],
        [{"item": ["c"], "index": 1}, {"item": "c", "index": 0}],
    ]
    inner = result.entries_for("inner")
    assert [e.loop_index for e in inner] == [0, 1]
    assert [len(e.output["result"]) for e in inner] == [2, 1]
    assert len(result.entries_for("outer")[0].output["result"]) == 2


# ---- Structural failures and the step budget ----


@pytest.mark.asyncio
async def test_missing_start_node_aborts(simulator):
    nodes = [new_node(NodeType.END, Position(), node_id="end")]

    result = await simulator.run(nodes, [], {})

    assert result.status == RunStatus.ABORTED
    assert result.abort_reason == AbortReason.NO_START_NODE
    assert result.log == []


@pytest.mark.asyncio
async def test_multiple_start_nodes_abort(simulator):
    nodes = [
        new_node(NodeType.START, Position(), node_id="a"),
        new_node(NodeType.START, Position(), node_id="b"),
    ]

    result = await simulator.run(nodes, [], {})

    assert result.abort_reason == AbortReason.MULTIPLE_START_NODES
    assert result.log == []


@pytest.mark.asyncio
async def test_cycle_is_cut_by_step_budget():
    simulator = Simulator(make_config(max_steps=10))
    nodes = [
        new_node(NodeType.START, Position(), node_id="start"),
        new_node(NodeType.SCRIPT, Position(), node_id="a"),
        new_node(NodeType.SCRIPT, Position(), node_id="b"),
    ]
    edges = [
        Edge(id="e1", source="start", target="a"),
        Edge(id="e2", source="a", target="b"),
        Edge(id="e3", source="b", target="a"),
    ]

    result = await simulator.run(nodes, edges, {})

    assert result.status == RunStatus.ABORTED
    assert result.abort_reason == AbortReason.STEP_BUDGET_EXHAUSTED
    assert len(result.log) == 10
    assert result.steps_executed == 10


@pytest.mark.asyncio
async def test_run_replaces_previous_artifacts():
    store = approval_workflow()
    await store.run_simulation({"amount": 8500})
    assert "approval" in store.execution_status

    await store.run_simulation({"amount": 1})

    assert "approval" not in store.execution_status
    assert "notify" in store.node_outputs
    assert [e.node_id for e in store.simulation_log] == ["start", "branch", "notify", "end"]

    store.reset_simulation()
    assert store.simulation_log == []
    assert store.execution_status == {}


@pytest.mark.asyncio
async def test_run_restores_callers_trace_context(simulator):
    set_trace_context(run_id="caller")
    store = approval_workflow()

    result = await simulator.run(store.state.nodes, store.state.edges, {"amount": 8500})

    assert result.success
    assert get_trace_context() == {"run_id": "caller"}


def test_run_sync():
    simulator = Simulator(make_config())
    nodes = [
        new_node(NodeType.START, Position(), node_id="start"),
        new_node(NodeType.END, Position(), node_id="end"),
    ]

    result = simulator.run_sync(nodes, [Edge(id="e1", source="start", target="end")], {"k": 1})

    assert result.visited() == ["start", "end"]
    assert result.log[-1].output == {"k": 1}
