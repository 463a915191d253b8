"""Tests for diagramflow.operations: the semantic operation engine."""

from __future__ import annotations

import pytest

from diagramflow.errors import OperationError
from diagramflow.models import make_edge, make_group, make_node
from diagramflow.operations import (
    AddNodeOp,
    NodeSpec,
    SortNodesOp,
    apply_ops,
    parse_ops,
)

from conftest import make_document


# ─── Parsing ──────────────────────────────────────────────────────────────────


class TestParseOps:
    def test_dicts_become_typed_ops(self):
        ops = parse_ops([
            {"op": "add_node", "node": {"label": "A"}},
            {"op": "sort_nodes", "direction": "LR", "groupId": "g1"},
        ])
        assert isinstance(ops[0], AddNodeOp)
        assert isinstance(ops[1], SortNodesOp)
        assert ops[1].group_id == "g1"

    def test_unknown_op(self):
        with pytest.raises(OperationError, match="Invalid operation"):
            parse_ops([{"op": "explode"}])

    def test_unknown_patch_key_rejected(self):
        with pytest.raises(OperationError):
            parse_ops([{"op": "update_node", "id": "a", "changes": {"colour": "red"}}])

    def test_models_pass_through(self):
        op = AddNodeOp(node=NodeSpec(label="A"))
        assert parse_ops([op]) == [op]


# ─── Nodes ────────────────────────────────────────────────────────────────────


class TestNodeOps:
    def test_add_node_with_generated_id(self, empty_doc, id_generator):
        result = apply_ops(empty_doc, [{"op": "add_node", "node": {"label": "A", "shape": "diamond"}}], id_generator)
        assert result.success
        node = result.document.nodes[0]
        assert node.id == "id1"
        assert node.shape == "diamond"
        assert (node.x, node.y) == (0, 0)
        assert empty_doc.nodes == []

    def test_add_node_with_explicit_id(self, empty_doc):
        result = apply_ops(empty_doc, [{"op": "add_node", "node": {"id": "svc", "label": "Svc"}}])
        assert result.document.get_node("svc") is not None

    def test_add_node_duplicate_id(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "add_node", "node": {"id": "e1", "label": "Clash"}}])
        assert not result.success
        assert "already exists" in result.error

    def test_add_node_unknown_group(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "add_node", "node": {"label": "X", "group": "ghost"}}])
        assert not result.success
        assert "ghost" in result.error

    def test_remove_node_cascades_edges(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "remove_node", "id": "b"}])
        assert result.success
        for edge in result.document.edges:
            assert edge.source != "b" and edge.target != "b"
        assert result.document.edges == []

    def test_update_node_merges_fields(self, chain_doc):
        result = apply_ops(chain_doc, [
            {"op": "update_node", "id": "a", "changes": {"label": "Gateway", "tags": ["edge"]}},
        ])
        node = result.document.get_node("a")
        assert node.label == "Gateway"
        assert node.tags == ["edge"]
        assert node.x == 100

    def test_update_pinned_node_keeps_position(self, chain_doc):
        chain_doc.get_node("a").pinned = True
        result = apply_ops(chain_doc, [
            {"op": "update_node", "id": "a", "changes": {"x": 5, "y": 5, "label": "Moved?"}},
        ])
        node = result.document.get_node("a")
        assert (node.x, node.y) == (100, 100)
        assert node.label == "Moved?"

    def test_update_grouped_node_geometry_clears_group_cache(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "update_node", "id": "c", "changes": {"width": 300}}])
        group = result.document.get_group("g1")
        assert group.x is None and group.y is None

    def test_update_node_label_keeps_group_cache(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "update_node", "id": "c", "changes": {"label": "DB"}}])
        group = result.document.get_group("g1")
        assert (group.x, group.y) == (80, 452)

    def test_update_unknown_node(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "update_node", "id": "zz", "changes": {"label": "Z"}}])
        assert not result.success
        assert result.error == "Node \"zz\" not found"


# ─── Edges ────────────────────────────────────────────────────────────────────


class TestEdgeOps:
    def test_add_edge(self, chain_doc, id_generator):
        result = apply_ops(chain_doc, [
            {"op": "add_edge", "edge": {"source": "a", "target": "c", "style": "dashed", "dataTypes": ["json"]}},
        ], id_generator)
        edge = result.document.get_edge("id1")
        assert edge.style == "dashed"
        assert edge.data_types == ["json"]

    def test_add_edge_unknown_endpoint(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "add_edge", "edge": {"source": "a", "target": "nope"}}])
        assert not result.success
        assert "Target node" in result.error

    def test_update_edge_reconnects(self, chain_doc):
        result = apply_ops(chain_doc, [
            {"op": "update_edge", "id": "e1", "changes": {"source": "c", "label": "reads"}},
        ])
        edge = result.document.get_edge("e1")
        assert (edge.source, edge.target, edge.label) == ("c", "b", "reads")

    def test_update_edge_unknown_endpoint(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "update_edge", "id": "e1", "changes": {"target": "nope"}}])
        assert not result.success

    def test_remove_edge(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "remove_edge", "id": "e1"}])
        assert [e.id for e in result.document.edges] == ["e2"]

    def test_remove_unknown_edge(self, chain_doc):
        assert not apply_ops(chain_doc, [{"op": "remove_edge", "id": "e9"}]).success


# ─── Groups ───────────────────────────────────────────────────────────────────


class TestGroupOps:
    def test_add_group_creates_array(self, id_generator):
        doc = make_document(nodes=[make_node("a", "A")])
        assert doc.groups is None
        result = apply_ops(doc, [{"op": "add_group", "group": {"label": "Zone", "color": "blue"}}], id_generator)
        assert [g.id for g in result.document.groups] == ["id1"]
        assert result.document.groups[0].x is None

    def test_add_group_then_assign_in_same_batch(self, chain_doc):
        result = apply_ops(chain_doc, [
            {"op": "add_group", "group": {"id": "edge", "label": "Edge"}},
            {"op": "update_node", "id": "a", "changes": {"group": "edge"}},
        ])
        assert result.success
        assert result.document.get_node("a").group == "edge"

    def test_remove_group_detaches_members(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "remove_group", "id": "g1"}])
        assert result.document.groups == []
        node = result.document.get_node("c")
        assert node is not None and node.group is None

    def test_update_group(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "update_group", "id": "g1", "changes": {"label": "Data"}}])
        assert result.document.get_group("g1").label == "Data"

    def test_update_group_empty_label_rejected(self):
        with pytest.raises(OperationError):
            parse_ops([{"op": "update_group", "id": "g1", "changes": {"label": ""}}])


# ─── Atomicity ────────────────────────────────────────────────────────────────


class TestAtomicity:
    def test_failing_op_discards_whole_batch(self, chain_doc):
        before = chain_doc.model_dump()
        result = apply_ops(chain_doc, [
            {"op": "add_node", "node": {"id": "new", "label": "New"}},
            {"op": "remove_node", "id": "a"},
            {"op": "remove_edge", "id": "does-not-exist"},
        ])
        assert not result.success
        assert result.document is None
        assert chain_doc.model_dump() == before

    def test_later_ops_see_earlier_ones(self, empty_doc):
        result = apply_ops(empty_doc, [
            {"op": "add_node", "node": {"id": "a", "label": "A"}},
            {"op": "add_node", "node": {"id": "b", "label": "B"}},
            {"op": "add_edge", "edge": {"id": "ab", "source": "a", "target": "b"}},
            {"op": "remove_node", "id": "a"},
        ])
        assert result.success
        assert [n.id for n in result.document.nodes] == ["b"]
        assert result.document.edges == []

    def test_empty_batch(self, chain_doc):
        result = apply_ops(chain_doc, [])
        assert result.success
        assert result.document.model_dump() == chain_doc.model_dump()


# ─── Sorting ──────────────────────────────────────────────────────────────────


class TestSortNodes:
    def test_tb_order_and_row(self):
        doc = make_document(nodes=[make_node("n1", "One", x=300, y=100), make_node("n2", "Two", x=100, y=100)])
        result = apply_ops(doc, [{"op": "sort_nodes", "direction": "TB"}])
        nodes = result.document.nodes
        assert [n.id for n in nodes] == ["n2", "n1"]
        assert all(n.y == 100 for n in nodes)
        assert result.sorted_node_ids == {"n1", "n2"}

    def test_direction_written_to_meta(self):
        doc = make_document(nodes=[make_node("n1", "One", x=10, y=10)])
        result = apply_ops(doc, [{"op": "sort_nodes", "direction": "RL"}])
        assert result.document.meta.layout_direction == "RL"

    def test_defaults_to_document_direction(self):
        doc = make_document(
            nodes=[make_node("n1", "One", x=100, y=300), make_node("n2", "Two", x=300, y=100)],
            layoutDirection="LR",
        )
        result = apply_ops(doc, [{"op": "sort_nodes"}])
        assert [n.id for n in result.document.nodes] == ["n1", "n2"]

    def test_grouped_nodes_excluded(self):
        doc = make_document(
            nodes=[
                make_node("n1", "In", x=500, y=500, group="g1"),
                make_node("n2", "Top", x=100, y=100),
                make_node("n3", "In too", x=0, y=900, group="g1"),
            ],
            groups=[make_group("g1", "G", x=1, y=2)],
        )
        result = apply_ops(doc, [{"op": "sort_nodes", "direction": "TB"}])
        nodes = result.document.nodes
        grouped = [n for n in nodes if n.group == "g1"]
        assert {n.id for n in grouped} == {"n1", "n3"}
        assert (result.document.get_node("n1").x, result.document.get_node("n1").y) == (500, 500)
        positions = [i for i, n in enumerate(nodes) if n.group == "g1"]
        assert positions == list(range(positions[0], positions[0] + len(positions)))
        assert result.sorted_node_ids == {"n2"}

    def test_group_scoped_sort(self):
        doc = make_document(
            nodes=[
                make_node("a", "Top", x=0, y=0),
                make_node("m2", "Second", x=400, y=200, group="g1"),
                make_node("m1", "First", x=200, y=200, group="g1"),
            ],
            groups=[make_group("g1", "G", x=180, y=152)],
        )
        result = apply_ops(doc, [{"op": "sort_nodes", "direction": "TB", "groupId": "g1"}])
        assert [n.id for n in result.document.nodes] == ["a", "m1", "m2"]
        assert result.sorted_node_ids == {"m1", "m2"}
        group = result.document.get_group("g1")
        assert group.x is None and group.y is None

    def test_group_scoped_sort_unknown_group(self, chain_doc):
        result = apply_ops(chain_doc, [{"op": "sort_nodes", "groupId": "ghost"}])
        assert not result.success

    def test_groups_array_sorted(self):
        doc = make_document(
            nodes=[make_node("a", "A", x=0, y=0)],
            groups=[make_group("low", "Low", x=0, y=400), make_group("high", "High", x=0, y=10)],
        )
        result = apply_ops(doc, [{"op": "sort_nodes", "direction": "TB"}])
        assert [g.id for g in result.document.groups] == ["high", "low"]

    def test_self_loop_does_not_block_sort(self):
        doc = make_document(nodes=[make_node("a", "A")], edges=[make_edge("e1", "a", "a")])
        assert apply_ops(doc, [{"op": "sort_nodes"}]).success
