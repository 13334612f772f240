"""
Tests for variable discovery and template resolution.
"""

import json

from flowsim.graph.edge import Edge
from flowsim.graph.mutations import new_node
from flowsim.graph.node import NodeType, Position, config_for
from flowsim.graph.state import GraphState
from flowsim.graph.store import GraphStore
from flowsim.graph.variables import (
    JSON_ERROR_LABEL,
    UNDEFINED,
    GlobalVariable,
    RuntimeContext,
    flatten_payload,
    get_path,
    materialize_config,
    parse_payload,
    render_template,
    split_path,
    upstream_node_ids,
)


def chain_state(*types: NodeType) -> GraphState:
    """n0 -> n1 -> ... with n0 a start node."""
    nodes = [new_node(NodeType.START, Position(), node_id="n0")]
    nodes += [new_node(t, Position(), node_id=f"n{i + 1}") for i, t in enumerate(types)]
    edges = [
        Edge(id=f"e{i}", source=nodes[i].id, target=nodes[i + 1].id)
        for i in range(len(nodes) - 1)
    ]
    return GraphState(nodes=nodes, edges=edges)


def paths(options) -> list[str]:
    return [o.path for o in options]


# === Paths ===


class TestPaths:
    def test_split_path_with_index(self):
        assert split_path("payload.items[0].name") == ["payload", "items", "0", "name"]

    def test_get_path(self):
        tree = {"payload": {"items": [{"name": "a"}, {"name": "b"}]}}

        assert get_path(tree, "payload.items[1].name") == "b"
        assert get_path(tree, "payload.items[5].name") is UNDEFINED
        assert get_path(tree, "payload.missing") is UNDEFINED
        assert get_path(tree, "") is UNDEFINED

    def test_flatten_payload(self):
        payload = {
            "order_id": "A",
            "customer": {"name": "Ann", "tier": "gold"},
            "items": [{"sku": "x", "qty": 1}],
            "tags": [],
        }

        assert flatten_payload(payload) == [
            "payload.order_id",
            "payload.customer.name",
            "payload.customer.tier",
            "payload.items",
            "payload.items[0].sku",
            "payload.items[0].qty",
            "payload.tags",
        ]

    def test_parse_payload(self):
        assert parse_payload('{"a": 1}') == ({"a": 1}, None)
        assert parse_payload("") == ({}, None)
        value, error = parse_payload("{oops")
        assert value == "{oops"
        assert error.startswith("Invalid JSON payload")


# === Rendering ===


class TestRenderTemplate:
    def setup_method(self):
        context = RuntimeContext(payload={"amount": 8500, "customer": {"name": "Ann"}})
        context = context.with_output("api_1", {"status": 200, "data": {"id": 7}})
        self.tree = context.push_loop({"sku": "x"}, 2, "loop_1").value_tree()

    def test_whole_token_keeps_type(self):
        assert render_template("{{payload.amount}}", self.tree).value == 8500
        assert render_template("{{nodes.api_1.data}}", self.tree).value == {"id": 7}
        assert render_template("{{ loop.index }}", self.tree).value == 2

    def test_mixed_text_is_stringified(self):
        result = render_template("Order for {{payload.customer.name}}: {{amount}}", self.tree)

        assert result.value == "Order for Ann: 8500"
        assert result.warnings == []

    def test_unresolved_token(self):
        result = render_template("Hi {{payload.nope}}", self.tree)

        assert result.value == "Hi undefined"
        assert result.warnings == ["Unresolved variable '{{payload.nope}}'"]

        whole = render_template("{{nodes.ghost.output}}", self.tree)
        assert whole.value is UNDEFINED
        assert len(whole.warnings) == 1

    def test_non_templates_pass_through(self):
        assert render_template(42, self.tree).value == 42
        assert render_template("plain", self.tree).value == "plain"

    def test_materialize_skips_raw_fields(self):
        config = config_for(NodeType.LOOP, {"target_array": "{{payload.x}}"})
        rendered, warnings = materialize_config(config, RuntimeContext(payload={}))

        assert rendered["target_array"] == "{{payload.x}}"
        assert warnings == []


class TestRuntimeContext:
    def test_with_output_does_not_mutate(self):
        base = RuntimeContext(payload={})
        child = base.with_output("a", 1)

        assert base.node_outputs == {}
        assert child.node_outputs == {"a": 1}

    def test_nested_loop_frames(self):
        context = RuntimeContext().push_loop("outer", 0).push_loop("inner", 3)
        tree = context.value_tree()

        assert tree["loop"]["item"] == "inner"
        assert tree["loop"]["index"] == 3
        assert [f["item"] for f in tree["loop"]["frames"]] == ["outer", "inner"]

    def test_eval_namespace_exposes_payload_keys(self):
        namespace = RuntimeContext(payload={"amount": 3}).eval_namespace()

        assert namespace["amount"] == 3
        assert namespace["payload"] == {"amount": 3}


# === Discovery ===


class TestAvailableVariables:
    def test_upstream_order_is_nearest_first(self):
        state = chain_state(NodeType.API_CALL, NodeType.SCRIPT, NodeType.END)

        assert upstream_node_ids(state, "n3") == ["n2", "n1", "n0"]
        assert upstream_node_ids(state, "n0") == []

    def test_upstream_outputs_and_payload(self):
        state = chain_state(NodeType.API_CALL, NodeType.END)
        store = GraphStore(state.nodes, state.edges)
        store.update_node("n0", config={"dev_input": json.dumps({"amount": 1})})

        options = store.available_variables("n2")

        found = paths(options)
        assert "payload.amount" in found
        assert "nodes.n1.data" in found
        assert "nodes.n1.status" in found
        assert "nodes.n0.amount" in found
        assert "system.execution_id" in found
        assert not any(p.startswith("loop.") for p in found)

    def test_downstream_nodes_are_not_offered(self):
        state = chain_state(NodeType.API_CALL, NodeType.SCRIPT)
        store = GraphStore(state.nodes, state.edges)

        found = paths(store.available_variables("n1"))

        assert "nodes.n2.output" not in found

    def test_json_error_sentinel(self):
        state = chain_state(NodeType.END)
        store = GraphStore(state.nodes, state.edges)

        options = store.available_variables("n1", payload_text="{broken")

        assert options[0].label == JSON_ERROR_LABEL
        assert not any(o.path.startswith("payload.") for o in options)

    def test_loop_scope_variables(self):
        store = GraphStore()
        store.add_node(new_node(NodeType.START, Position(), node_id="start"))
        store.add_node(new_node(NodeType.LOOP, Position(y=150), node_id="loop"))
        store.connect("start", "loop", target_handle="loop-input")
        store.append_after("loop", NodeType.SCRIPT, inside=True, node_id="body")

        options = store.available_variables("body")

        loop_options = [o for o in options if o.source == "loop"]
        assert [o.path for o in loop_options] == ["loop.item", "loop.index"]
        assert loop_options[0].node_id == "loop"
        assert "nodes.loop.result" in paths(options)

    def test_global_variables(self):
        state = chain_state(NodeType.END)
        store = GraphStore(state.nodes, state.edges)
        store.set_global_variables(
            [GlobalVariable(name="region", displayName="Region", defaultValue="EU")]
        )

        globals_ = [o for o in store.available_variables("n1") if o.source == "global"]

        assert [(o.path, o.label) for o in globals_] == [("global.region", "Region")]

    def test_unknown_node(self):
        assert GraphStore().available_variables("ghost") == []
