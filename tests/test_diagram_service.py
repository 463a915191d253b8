"""Tests for diagramflow_server.diagram_service: the mutation contract,
undo/redo history and persistence failures.
"""

from __future__ import annotations

import json

import pytest

from diagramflow.errors import PersistenceError
from diagramflow.models import make_node, parse_document, serialize_document
from diagramflow_server.diagram_service import DiagramService, EditSession
from diagramflow_server.documents import FileDocument, FilePersistence, MemoryDocument, WriteRequest

from conftest import make_clock, make_document, make_id_generator


class FailingPersistence:
    def __init__(self):
        self.requests = []

    def apply(self, request: WriteRequest) -> None:
        self.requests.append(request)
        raise PersistenceError("disk full")


def current(doc: MemoryDocument):
    return parse_document(doc.get_text())


# ─── Semantic operations ──────────────────────────────────────────────────────


class TestApplySemanticOps:
    def test_writes_and_stamps(self, service, session, memory_doc):
        result = service.apply_semantic_ops(session, [{"op": "update_node", "id": "a", "changes": {"label": "Edge"}}])
        assert result.success and result.changed
        doc = current(memory_doc)
        assert doc.get_node("a").label == "Edge"
        assert doc.meta.modified == "2025-01-02T00:00:01.000Z"
        assert doc.agent_context.generated_at == doc.meta.modified
        assert "Edge" in doc.agent_context.summary
        assert session.can_undo

    def test_new_node_gets_partial_layout(self, service, session, memory_doc):
        service.apply_semantic_ops(session, [
            {"op": "add_node", "node": {"label": "Cache"}},
            {"op": "add_edge", "edge": {"source": "b", "target": "new1"}},
        ])
        node = current(memory_doc).get_node("new1")
        assert (node.x, node.y) != (0, 0)

    def test_failed_batch_leaves_store_untouched(self, service, session, memory_doc):
        before = memory_doc.get_text()
        result = service.apply_semantic_ops(session, [
            {"op": "remove_node", "id": "a"},
            {"op": "remove_node", "id": "ghost"},
        ])
        assert not result.success
        assert "ghost" in result.error
        assert memory_doc.get_text() == before
        assert not session.can_undo

    def test_invalid_op_reported(self, service, session):
        result = service.apply_semantic_ops(session, [{"op": "update_node", "id": "a", "changes": {"bogus": 1}}])
        assert not result.success
        assert result.error.startswith("Invalid operation")

    def test_empty_batch_is_noop(self, service, session, memory_doc):
        before = memory_doc.get_text()
        result = service.apply_semantic_ops(session, [])
        assert result.success and not result.changed
        assert memory_doc.get_text() == before
        assert not session.can_undo

    def test_no_active_document(self, service):
        result = service.apply_semantic_ops(EditSession(), [])
        assert not result.success
        assert result.error == "No active diagram document"

    def test_parse_failure_reported(self, service):
        broken = MemoryDocument("{oops")
        result = service.apply_semantic_ops(EditSession(broken), [])
        assert not result.success
        assert "Failed to parse" in result.error

    def test_sorted_nodes_not_moved_by_partial_layout(self):
        doc = make_document(nodes=[make_node("n1", "N1", x=0, y=0), make_node("n2", "N2", x=300, y=0)])
        handle = MemoryDocument(serialize_document(doc))
        svc = DiagramService(handle, id_generator=make_id_generator(), clock=make_clock())
        result = svc.apply_semantic_ops(EditSession(handle), [
            {"op": "sort_nodes", "direction": "TB"},
            {"op": "add_node", "node": {"id": "fresh", "label": "Fresh"}},
        ])
        assert result.success
        after = current(handle)
        assert (after.get_node("n1").x, after.get_node("n1").y) == (0, 0)
        assert (after.get_node("fresh").x, after.get_node("fresh").y) != (0, 0)


# ─── Moves ────────────────────────────────────────────────────────────────────


class TestMoves:
    def test_move_node_pins_and_clears_group_cache(self, service, session, memory_doc):
        assert service.move_node(session, "c", 400, 600).changed
        doc = current(memory_doc)
        node = doc.get_node("c")
        assert (node.x, node.y, node.pinned) == (400, 600, True)
        group = doc.get_group("g1")
        assert group.x is None and group.y is None

    def test_move_ungrouped_node_keeps_group_cache(self, service, session, memory_doc):
        service.move_node(session, "a", 10, 10)
        group = current(memory_doc).get_group("g1")
        assert (group.x, group.y) == (80, 452)

    def test_move_nodes_single_write(self, service, session, memory_doc):
        service.move_nodes(session, [("a", 1, 2), ("b", 3, 4)])
        doc = current(memory_doc)
        assert (doc.get_node("a").x, doc.get_node("b").y) == (1, 4)
        assert len(session.undo_stack) == 1

    def test_move_unknown_node(self, service, session, memory_doc):
        before = memory_doc.get_text()
        result = service.move_nodes(session, [("a", 1, 2), ("ghost", 3, 4)])
        assert not result.success
        assert memory_doc.get_text() == before

    def test_move_group_translates_members(self, service, session, memory_doc):
        # cached origin (80, 452) -> (180, 552): members shift by (100, 100)
        service.move_group(session, "g1", 180, 552)
        doc = current(memory_doc)
        assert (doc.get_node("c").x, doc.get_node("c").y) == (200, 600)
        assert (doc.get_group("g1").x, doc.get_group("g1").y) == (180, 552)
        assert doc.get_node("c").pinned is False

    def test_move_group_uses_derived_origin_without_cache(self, service, session, memory_doc):
        service.move_node(session, "c", 100, 500)
        # derived origin is (100 - 20, 500 - 20 - 28) = (80, 452)
        service.move_group(session, "g1", 80, 552)
        assert current(memory_doc).get_node("c").y == 600

    def test_move_unknown_group(self, service, session):
        assert not service.move_group(session, "ghost", 0, 0).success

    def test_reconnect_edge(self, service, session, memory_doc):
        assert service.reconnect_edge(session, "e1", "c", "a").success
        edge = current(memory_doc).get_edge("e1")
        assert (edge.source, edge.target) == ("c", "a")

    def test_reconnect_to_unknown_node(self, service, session):
        assert not service.reconnect_edge(session, "e1", "a", "ghost").success


# ─── Layout and sort ──────────────────────────────────────────────────────────


class TestLayoutEntryPoints:
    def test_auto_layout_keeps_pinned(self, service, session, memory_doc):
        service.move_node(session, "a", 999, 999)
        service.auto_layout_all(session)
        doc = current(memory_doc)
        assert (doc.get_node("a").x, doc.get_node("a").y) == (999, 999)
        assert doc.meta.layout_direction == "TB"

    def test_auto_layout_force_unpins(self, service, session, memory_doc):
        service.move_node(session, "a", 999, 999)
        service.auto_layout_force(session, "LR")
        doc = current(memory_doc)
        assert not any(n.pinned for n in doc.nodes)
        assert doc.get_node("a").x != 999
        assert doc.meta.layout_direction == "LR"

    def test_layout_on_unparsable_content_is_noop(self, service):
        broken = MemoryDocument("not json")
        for call in (service.auto_layout_all, service.auto_layout_force, service.sort_nodes):
            result = call(EditSession(broken))
            assert result.success and not result.changed
        assert broken.get_text() == "not json"

    def test_layout_without_document_is_noop(self, service):
        assert service.auto_layout_all(EditSession()).success

    def test_second_layout_is_noop(self, service, session):
        assert service.auto_layout_all(session).changed
        depth = len(session.undo_stack)
        assert not service.auto_layout_all(session).changed
        assert len(session.undo_stack) == depth

    def test_sort_nodes_uses_document_direction(self, service, session, memory_doc):
        service.sort_nodes(session)
        assert current(memory_doc).meta.layout_direction == "TB"

    def test_sort_unknown_group_reported(self, service, session):
        assert not service.sort_nodes(session, group_id="ghost").success


# ─── Undo / Redo ──────────────────────────────────────────────────────────────


class TestHistory:
    def test_undo_redo_round_trip(self, service, session, memory_doc):
        original = memory_doc.get_text()
        service.apply_semantic_ops(session, [{"op": "remove_node", "id": "a"}])
        mutated = memory_doc.get_text()

        assert service.undo(session).changed
        assert memory_doc.get_text() == original
        assert session.can_redo

        assert service.redo(session).changed
        assert memory_doc.get_text() == mutated

    def test_new_action_clears_redo(self, service, session):
        service.move_node(session, "a", 1, 1)
        service.undo(session)
        service.move_node(session, "b", 2, 2)
        assert not session.can_redo

    def test_empty_stacks_are_noops(self, service, session, memory_doc):
        before = memory_doc.get_text()
        assert not service.undo(session).changed
        assert not service.redo(session).changed
        assert memory_doc.get_text() == before

    def test_history_bounded(self, service, session):
        for i in range(60):
            service.move_node(session, "a", i + 1, i + 1)
        assert len(session.undo_stack) == 50
        undone = 0
        while service.undo(session).changed:
            undone += 1
        assert undone == 50

    def test_custom_history_bound(self, memory_doc, session):
        svc = DiagramService(memory_doc, history_max=3, clock=make_clock())
        for i in range(5):
            svc.move_node(session, "a", i + 1, 0)
        assert len(session.undo_stack) == 3

    def test_switching_document_clears_history(self, service, session, chain_doc):
        service.move_node(session, "a", 1, 1)
        session.set_active(MemoryDocument(serialize_document(chain_doc), uri="memory://other"))
        assert not session.can_undo and not session.can_redo

    def test_same_document_keeps_history(self, service, session, memory_doc):
        service.move_node(session, "a", 1, 1)
        session.set_active(memory_doc)
        assert session.can_undo


# ─── Persistence ──────────────────────────────────────────────────────────────


class TestPersistence:
    def test_failed_write_is_reported_and_not_recorded(self, memory_doc):
        persistence = FailingPersistence()
        svc = DiagramService(persistence, clock=make_clock())
        session = EditSession(memory_doc)
        result = svc.move_node(session, "a", 5, 5)
        assert not result.success
        assert result.error == "disk full"
        assert len(persistence.requests) == 1
        assert not session.can_undo

    def test_failed_undo_keeps_stacks(self, memory_doc):
        session = EditSession(memory_doc)
        DiagramService(memory_doc, clock=make_clock()).move_node(session, "a", 5, 5)
        result = DiagramService(FailingPersistence()).undo(session)
        assert not result.success
        assert len(session.undo_stack) == 1
        assert not session.can_redo

    def test_file_round_trip(self, tmp_path, chain_doc):
        path = tmp_path / "arch.diagram"
        path.write_text(serialize_document(chain_doc), encoding="utf-8")
        persistence = FilePersistence()
        handle = persistence.register(FileDocument(path))
        svc = DiagramService(persistence, clock=make_clock())
        session = EditSession(handle)

        assert svc.move_node(session, "a", 42, 42).success
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["nodes"][0]["x"] == 42
        assert list(tmp_path.iterdir()) == [path]

    def test_unregistered_file_rejected(self, tmp_path):
        with pytest.raises(PersistenceError):
            FilePersistence().apply(WriteRequest(uri=(tmp_path / "x").as_uri(), full_text="{}"))

    def test_unreadable_file_raises_persistence_error(self, tmp_path):
        with pytest.raises(PersistenceError, match="Failed to read"):
            FileDocument(tmp_path / "gone.diagram").get_text()

    def test_memory_document_rejects_other_uri(self, memory_doc):
        with pytest.raises(PersistenceError):
            memory_doc.apply(WriteRequest(uri="memory://elsewhere", full_text="{}"))

    def test_parse_document_helper(self, service, session):
        assert service.parse_document(session).get_node("a").label == "API"
        assert service.parse_document(EditSession()) is None


# ─── Missing backing file ─────────────────────────────────────────────────────


class TestMissingBackingFile:
    @pytest.fixture
    def file_session(self, tmp_path, chain_doc):
        path = tmp_path / "arch.diagram"
        path.write_text(serialize_document(chain_doc), encoding="utf-8")
        persistence = FilePersistence()
        handle = persistence.register(FileDocument(path))
        svc = DiagramService(persistence, clock=make_clock())
        return svc, EditSession(handle), path

    def test_ops_report_read_failure(self, file_session):
        svc, session, path = file_session
        path.unlink()
        result = svc.apply_semantic_ops(session, [{"op": "add_node", "node": {"label": "X"}}])
        assert not result.success
        assert "Failed to read" in result.error
        assert not session.can_undo

    def test_moves_report_read_failure(self, file_session):
        svc, session, path = file_session
        path.unlink()
        assert not svc.move_node(session, "a", 1, 1).success

    def test_layout_and_sort_are_noops(self, file_session):
        svc, session, path = file_session
        path.unlink()
        for result in (svc.auto_layout_all(session), svc.auto_layout_force(session), svc.sort_nodes(session)):
            assert result.success and not result.changed
        assert not path.exists()

    def test_undo_reports_read_failure_and_keeps_stacks(self, file_session):
        svc, session, path = file_session
        assert svc.move_node(session, "a", 5, 5).success
        path.unlink()
        result = svc.undo(session)
        assert not result.success
        assert len(session.undo_stack) == 1
        assert not session.can_redo
