"""
Tests for GraphStore structural operations.

Every rejected operation must leave the store exactly as it was.
"""

import pytest

from flowsim.graph.edge import LOOP_INPUT, LOOP_OUTPUT, LOOP_START
from flowsim.graph.errors import (
    DuplicateIdError,
    EdgeNotFoundError,
    HandleOccupiedError,
    InvalidConnectionError,
    InvalidParentError,
    NodeNotFoundError,
)
from flowsim.graph.mutations import new_node
from flowsim.graph.node import NodeType, Position
from flowsim.graph.store import CategoryError, GraphStore
from flowsim.graph.category import Category

# === HELPER FUNCTIONS ===


def make_store() -> GraphStore:
    store = GraphStore()
    store.add_node(new_node(NodeType.START, Position(x=0, y=0), node_id="start"))
    return store


def make_loop_store() -> GraphStore:
    """start -> loop(body: first -> second) -> end"""
    store = make_store()
    store.add_node(new_node(NodeType.LOOP, Position(x=0, y=200), node_id="loop"))
    store.connect("start", "loop", target_handle=LOOP_INPUT)
    store.append_after("loop", NodeType.SCRIPT, inside=True, node_id="first")
    store.append_after("first", NodeType.SCRIPT, node_id="second")
    store.append_after("loop", NodeType.END, node_id="end")
    return store


def edges_touching(store: GraphStore, node_ids: set[str]) -> list[str]:
    return [e.id for e in store.edges if e.source in node_ids or e.target in node_ids]


# === ADD / DELETE ===


class TestAddAndDelete:
    def test_add_node_rejects_duplicate_id(self):
        store = make_store()
        before = store.state

        with pytest.raises(DuplicateIdError):
            store.add_node(new_node(NodeType.END, Position(), node_id="start"))

        assert store.state is before

    def test_add_node_with_non_container_parent_is_rejected(self):
        store = make_store()

        with pytest.raises(InvalidParentError):
            store.add_node(new_node(NodeType.SCRIPT, Position(), parent_id="start", node_id="s"))

        assert store.get_node("s") is None

    def test_delete_container_cascades_to_children_and_edges(self):
        """Deleting a loop removes its body and every edge touching any removed node."""
        store = make_loop_store()
        assert {n.id for n in store.nodes} == {"start", "loop", "first", "second", "end"}

        store.delete_node("loop")

        assert {n.id for n in store.nodes} == {"start", "end"}
        assert edges_touching(store, {"loop", "first", "second"}) == []
        remaining = {n.id for n in store.nodes}
        for edge in store.edges:
            assert edge.source in remaining and edge.target in remaining

    def test_delete_cascades_through_nested_containers(self):
        store = make_loop_store()
        store.add_node(new_node(NodeType.LOOP, Position(x=10, y=10), "loop", node_id="inner"))
        store.append_after("inner", NodeType.SCRIPT, inside=True, node_id="deep")

        store.delete_node("loop")

        assert store.get_node("inner") is None
        assert store.get_node("deep") is None
        assert edges_touching(store, {"inner", "deep"}) == []

    def test_delete_unknown_node_is_noop(self):
        store = make_loop_store()
        before = store.state

        store.delete_node("does-not-exist")

        assert store.state is before

    def test_delete_clears_selection_of_removed_node(self):
        store = make_loop_store()
        store.select_node("second")

        store.delete_node("loop")

        assert store.selected_node_id is None

    def test_delete_keeps_unrelated_selection(self):
        store = make_loop_store()
        store.select_node("end")

        store.delete_node("loop")

        assert store.selected_node_id == "end"


# === INSERT BETWEEN ===


class TestInsertBetween:
    def test_insert_preserves_connectivity(self):
        store = make_store()
        store.append_after("start", NodeType.END, node_id="end")
        edge = store.edges[0]

        node = store.insert_between(edge.id, NodeType.APPROVAL)

        assert store.get_edge(edge.id) is None
        out_of_start = [e.target for e in store.state.get_outgoing_edges("start")]
        out_of_new = [e.target for e in store.state.get_outgoing_edges(node.id)]
        assert out_of_start == [node.id]
        assert out_of_new == ["end"]

    def test_inserted_node_sits_at_midpoint(self):
        store = make_store()
        store.add_node(new_node(NodeType.END, Position(x=100, y=300), node_id="end"))
        store.connect("start", "end")

        node = store.insert_between(store.edges[0].id, NodeType.DELAY)

        assert node.position.x == pytest.approx(50)
        assert node.position.y == pytest.approx(150)

    def test_insert_inside_container_keeps_parent(self):
        store = make_loop_store()
        body_edge = next(e for e in store.edges if e.source == "first" and e.target == "second")

        node = store.insert_between(body_edge.id, NodeType.NOTIFICATION)

        assert node.parent_id == "loop"

    def test_insert_across_frames_places_node_at_root(self):
        store = make_loop_store()
        edge = store.connect("second", "end")

        node = store.insert_between(edge.id, NodeType.NOTIFICATION)

        assert node.parent_id is None

    def test_insert_after_branch_output_keeps_handle(self):
        store = make_store()
        branch = store.append_after("start", NodeType.CONDITION, node_id="branch")
        store.append_after(branch.id, NodeType.APPROVAL, node_id="yes")
        edge = next(e for e in store.edges if e.source == "branch")
        assert edge.source_handle == "true"

        node = store.insert_between(edge.id, NodeType.CC)

        first = next(e for e in store.edges if e.target == node.id)
        assert first.source == "branch"
        assert first.source_handle == "true"

    def test_inserted_parallel_defaults_to_first_branch(self):
        store = make_store()
        store.append_after("start", NodeType.END, node_id="end")

        node = store.insert_between(store.edges[0].id, NodeType.PARALLEL)

        second = next(e for e in store.edges if e.source == node.id)
        assert second.source_handle == "branch-0"

    def test_inserted_loop_uses_loop_handles(self):
        store = make_store()
        store.append_after("start", NodeType.END, node_id="end")

        node = store.insert_between(store.edges[0].id, NodeType.LOOP)

        incoming = next(e for e in store.edges if e.target == node.id)
        outgoing = next(e for e in store.edges if e.source == node.id)
        assert incoming.target_handle == LOOP_INPUT
        assert outgoing.source_handle == LOOP_OUTPUT

    def test_stale_edge_is_rejected(self):
        store = make_store()
        before = store.state

        with pytest.raises(EdgeNotFoundError):
            store.insert_between("e-missing", NodeType.SCRIPT)

        assert store.state is before


# === APPEND AFTER ===


class TestAppendAfter:
    def test_append_below_anchor_in_same_container(self):
        store = make_loop_store()

        node = store.append_after("second", NodeType.LLM)

        second = store.get_node("second")
        assert node.parent_id == "loop"
        assert node.position.x == second.position.x
        assert node.position.y > second.position.y
        assert [e.target for e in store.state.get_outgoing_edges("second")] == [node.id]

    def test_append_inside_container_wires_loop_start(self):
        store = make_store()
        store.add_node(new_node(NodeType.LOOP, Position(x=0, y=200), node_id="loop"))

        child = store.append_after("loop", NodeType.SCRIPT, inside=True)

        assert child.parent_id == "loop"
        edge = next(e for e in store.edges if e.target == child.id)
        assert edge.source == "loop"
        assert edge.source_handle == LOOP_START

    def test_append_inside_twice_is_handle_occupied(self):
        store = make_loop_store()

        with pytest.raises(HandleOccupiedError):
            store.append_after("loop", NodeType.SCRIPT, inside=True)

    def test_append_inside_non_container_is_rejected(self):
        store = make_store()

        with pytest.raises(InvalidParentError):
            store.append_after("start", NodeType.SCRIPT, inside=True)

    def test_condition_outputs_fill_true_then_false(self):
        store = make_store()
        store.append_after("start", NodeType.CONDITION, node_id="branch")

        store.append_after("branch", NodeType.APPROVAL, node_id="yes")
        store.append_after("branch", NodeType.NOTIFICATION, node_id="no")

        handles = {e.target: e.source_handle for e in store.edges if e.source == "branch"}
        assert handles == {"yes": "true", "no": "false"}

        with pytest.raises(HandleOccupiedError):
            store.append_after("branch", NodeType.CC)

    def test_plain_node_allows_single_unlabelled_output(self):
        store = make_store()
        store.append_after("start", NodeType.SCRIPT)

        with pytest.raises(HandleOccupiedError):
            store.append_after("start", NodeType.SCRIPT)

        assert len(store.nodes) == 2


# === CONNECT ===


class TestConnect:
    def test_connect_rejects_occupied_handle(self):
        store = make_store()
        store.append_after("start", NodeType.END, node_id="end")
        store.add_node(new_node(NodeType.SCRIPT, Position(), node_id="other"))
        before = store.state

        with pytest.raises(HandleOccupiedError):
            store.connect("start", "other")

        assert store.state is before

    def test_connect_rejects_unknown_handle(self):
        store = make_store()
        store.append_after("start", NodeType.CONDITION, node_id="branch")
        store.add_node(new_node(NodeType.END, Position(), node_id="end"))

        with pytest.raises(InvalidConnectionError):
            store.connect("branch", "end", source_handle="maybe")

    def test_connect_parallel_branch_out_of_range(self):
        store = make_store()
        store.append_after("start", NodeType.PARALLEL, node_id="fork")
        store.add_node(new_node(NodeType.END, Position(), node_id="end"))

        with pytest.raises(InvalidConnectionError):
            store.connect("fork", "end", source_handle="branch-2")

    def test_connect_rejects_self_loop_and_unknown_nodes(self):
        store = make_store()

        with pytest.raises(InvalidConnectionError):
            store.connect("start", "start")
        with pytest.raises(NodeNotFoundError):
            store.connect("start", "ghost")

    def test_edge_ids_are_unique(self):
        store = make_store()
        store.append_after("start", NodeType.PARALLEL, node_id="fork")
        store.add_node(new_node(NodeType.END, Position(), node_id="end"))

        a = store.connect("fork", "end", source_handle="branch-0")
        b = store.connect("fork", "end", source_handle="branch-1")

        assert a.id != b.id

    def test_disconnect(self):
        store = make_store()
        store.append_after("start", NodeType.END, node_id="end")
        edge_id = store.edges[0].id

        store.disconnect(edge_id)

        assert store.edges == []
        with pytest.raises(EdgeNotFoundError):
            store.disconnect(edge_id)


# === UPDATE / REPARENT ===


class TestUpdateAndReparent:
    def test_update_node_merges_config(self):
        store = make_store()
        store.append_after("start", NodeType.CONDITION, node_id="branch")

        node = store.update_node(
            "branch", label="Big order?", config={"expression": "amount > 5000"}
        )

        assert node.label == "Big order?"
        assert node.config.expression == "amount > 5000"

    def test_update_node_accepts_camel_case_keys(self):
        store = make_loop_store()

        node = store.update_node("loop", config={"targetArray": "payload.items"})

        assert node.config.target_array == "payload.items"

    def test_update_unknown_node(self):
        store = make_store()

        with pytest.raises(NodeNotFoundError):
            store.update_node("ghost", label="x")

    def test_reparent_converts_frames(self):
        store = make_store()
        store.add_node(new_node(NodeType.LOOP, Position(x=500, y=500), node_id="loop"))
        store.add_node(new_node(NodeType.SCRIPT, Position(x=600, y=550), node_id="s"))

        node = store.reparent("s", "loop")

        assert node.parent_id == "loop"
        assert (node.position.x, node.position.y) == (100, 50)

        node = store.reparent("s", None)

        assert node.parent_id is None
        assert (node.position.x, node.position.y) == (600, 550)

    def test_reparent_into_own_descendant_is_rejected(self):
        store = make_store()
        store.add_node(new_node(NodeType.LOOP, Position(), node_id="outer"))
        store.add_node(new_node(NodeType.LOOP, Position(x=10, y=10), "outer", node_id="inner"))
        before = store.state

        with pytest.raises(InvalidParentError):
            store.reparent("outer", "inner")

        assert store.state is before


# === CATEGORIES ===


class TestCategories:
    def test_default_categories(self):
        store = GraphStore()

        assert [c.id for c in store.categories] == ["general", "business_approval", "ai_agent"]
        assert store.active_category_id == "general"
        assert set(store.allowed_types()) == set(NodeType)

    def test_active_category_restricts_allowed_types(self):
        store = GraphStore()

        store.set_active_category("business_approval")

        allowed = store.allowed_types()
        assert NodeType.APPROVAL in allowed
        assert NodeType.LOOP not in allowed

    def test_system_category_cannot_be_deleted(self):
        store = GraphStore()

        with pytest.raises(CategoryError):
            store.delete_category("general")

    def test_deleting_active_custom_category_falls_back(self):
        store = GraphStore()
        store.add_category(
            Category(id="ops", name="Ops", allowed_types=[NodeType.START, NodeType.DELAY])
        )
        store.set_active_category("ops")
        assert store.allowed_types() == [NodeType.START, NodeType.DELAY]

        store.update_category("ops", name="Operations")
        assert store.get_category("ops").name == "Operations"

        store.delete_category("ops")

        assert store.active_category_id == "general"
        assert store.get_category("ops") is None

    def test_disallowed_node_stays_valid(self):
        """Categories only advise placement; existing nodes are untouched."""
        store = make_loop_store()

        store.set_active_category("business_approval")

        assert store.get_node("loop") is not None
