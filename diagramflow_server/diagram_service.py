"""
Diagram Service - mutation entry points, undo/redo history and persistence.

This module implements:
- An explicit EditSession (active document handle + undo/redo stacks)
- One mutation contract shared by every entry point:
    resolve handle -> parse -> compute -> no-op check -> stamp -> write -> record history
- Snapshot-based undo/redo bounded at `history_max` entries
- Layout entry points delegated to diagramflow.layout

The service never raises for expected conditions; every entry point returns a
MutationResult.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from diagramflow.agent_context import generate_agent_context
from diagramflow.errors import (
    NoActiveDocumentError,
    OperationError,
    ParseError,
    PersistenceError,
    ReferentialIntegrityError,
)
from diagramflow.layout import (
    LayoutConfig,
    DEFAULT_LAYOUT_CONFIG,
    apply_placements,
    compute_forced_layout,
    compute_full_layout,
    compute_partial_layout,
    config_for,
    invalidate_group_caches,
)
from diagramflow.models import (
    DiagramDocument,
    LayoutDirection,
    content_fingerprint,
    generate_id,
    group_origin,
    parse_document,
    serialize_document,
    utc_now_iso,
)
from diagramflow.operations import SortNodesOp, UpdateEdgeOp, apply_ops

from .documents import DocumentHandle, Persistence, WriteRequest

logger = logging.getLogger(__name__)

HISTORY_MAX = 50


@dataclass
class MutationResult:
    """Outcome of a mutation call."""
    success: bool
    error: Optional[str] = None
    # False for no-ops: nothing was written and no history was recorded
    changed: bool = False
    document: Optional[DiagramDocument] = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "changed": self.changed}
        if self.error:
            result["error"] = self.error
        return result


class EditSession:
    """
    The active document handle and its history.

    History is scoped to one open document: switching to a handle with a
    different uri clears both stacks. Snapshots are stored as the exact text
    that was on disk, so undo/redo restore byte-identical content.
    """

    def __init__(self, handle: Optional[DocumentHandle] = None):
        self._active: Optional[DocumentHandle] = handle
        self.undo_stack: list[str] = []
        self.redo_stack: list[str] = []

    @property
    def active(self) -> Optional[DocumentHandle]:
        return self._active

    def set_active(self, handle: Optional[DocumentHandle]) -> None:
        current_uri = self._active.uri if self._active is not None else None
        new_uri = handle.uri if handle is not None else None
        self._active = handle
        if new_uri != current_uri:
            self.undo_stack.clear()
            self.redo_stack.clear()

    @property
    def can_undo(self) -> bool:
        return len(self.undo_stack) > 0

    @property
    def can_redo(self) -> bool:
        return len(self.redo_stack) > 0

    def record(self, snapshot: str, history_max: int) -> None:
        """Push a pre-mutation snapshot; any new action invalidates redo."""
        self.redo_stack.clear()
        self.undo_stack.append(snapshot)
        # Trim history if too long
        while len(self.undo_stack) > history_max:
            self.undo_stack.pop(0)


class DiagramService:
    """
    Applies mutations to the session's active document.

    Args:
        persistence: Collaborator that applies WriteRequests
        id_generator: Produces ids for entities added without one
        history_max: Undo stack bound
        layout_config: Spacing used by every layout call
        clock: Produces the `meta.modified` stamp
    """

    def __init__(
        self,
        persistence: Persistence,
        id_generator: Callable[[], str] = generate_id,
        history_max: int = HISTORY_MAX,
        layout_config: LayoutConfig = DEFAULT_LAYOUT_CONFIG,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self._persistence = persistence
        self._id_generator = id_generator
        self._history_max = history_max
        self._layout_config = layout_config
        self._clock = clock

    # --- Reads ---

    def parse_document(self, session: EditSession,
                       handle: Optional[DocumentHandle] = None) -> Optional[DiagramDocument]:
        """
        Parse the target (or active) document.

        Returns None when there is no document. Raises ParseError when the
        content is malformed and PersistenceError when it cannot be read.
        """
        target = handle or session.active
        if target is None:
            return None
        return parse_document(target.get_text())

    def get_state(self, session: EditSession) -> dict:
        """Full state for API consumers."""
        state = {
            "document": None,
            "uri": session.active.uri if session.active is not None else None,
            "can_undo": session.can_undo,
            "can_redo": session.can_redo,
        }
        if session.active is not None:
            state["document"] = parse_document(session.active.get_text())
        return state

    # --- Mutation contract ---

    def _stamp(self, doc: DiagramDocument) -> None:
        doc.meta.modified = self._clock()
        doc.agent_context = generate_agent_context(doc)

    def _write(self, handle: DocumentHandle, text: str) -> None:
        self._persistence.apply(WriteRequest(uri=handle.uri, full_text=text))

    def _mutate(
        self,
        session: EditSession,
        name: str,
        compute: Callable[[DiagramDocument], DiagramDocument],
        handle: Optional[DocumentHandle] = None,
        best_effort: bool = False,
        require_document: bool = False,
    ) -> MutationResult:
        if handle is not None:
            session.set_active(handle)
        target = session.active
        if target is None:
            if require_document:
                return MutationResult(success=False, error=str(NoActiveDocumentError()))
            logger.debug("%s: no active document", name)
            return MutationResult(success=True)

        try:
            before_text = target.get_text()
            before = parse_document(before_text)
        except (ParseError, PersistenceError) as e:
            if best_effort:
                logger.debug("%s skipped: %s", name, e)
                return MutationResult(success=True)
            return MutationResult(success=False, error=str(e))

        try:
            after = compute(before.clone())
        except ValueError as e:
            # DiagramError and pydantic ValidationError are both ValueErrors
            logger.debug("%s rejected: %s", name, e)
            return MutationResult(success=False, error=str(e))

        if content_fingerprint(after) == content_fingerprint(before):
            logger.debug("%s: no changes", name)
            return MutationResult(success=True, changed=False, document=before)

        self._stamp(after)
        try:
            self._write(target, serialize_document(after))
        except PersistenceError as e:
            logger.warning("%s: write failed: %s", name, e)
            return MutationResult(success=False, error=str(e))

        session.record(before_text, self._history_max)
        logger.info("%s: wrote %s", name, target.uri)
        return MutationResult(success=True, changed=True, document=after)

    def _run_ops(self, doc: DiagramDocument, ops: Iterable, partial_layout: bool = True) -> DiagramDocument:
        result = apply_ops(doc, ops, self._id_generator)
        if not result.success:
            raise OperationError(result.error)
        modified = result.document
        if partial_layout:
            placements = compute_partial_layout(
                modified, config_for(modified, base=self._layout_config),
                exempt=result.sorted_node_ids,
            )
            apply_placements(modified, placements)
        return modified

    # --- Semantic operations ---

    def apply_semantic_ops(self, session: EditSession, ops: Iterable,
                           handle: Optional[DocumentHandle] = None) -> MutationResult:
        """
        Apply an operation batch, then place any new unpositioned nodes.

        Nodes a sort_nodes op positioned are exempt from the partial layout
        even when the sort left them at the origin.
        """
        ops = list(ops)
        return self._mutate(
            session, "apply_semantic_ops",
            lambda doc: self._run_ops(doc, ops),
            handle=handle, require_document=True,
        )

    def reconnect_edge(self, session: EditSession, edge_id: str, source: str, target: str,
                       handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Point an existing edge at new endpoints."""
        changes = {"source": source, "target": target}
        return self._mutate(
            session, "reconnect_edge",
            lambda doc: self._run_ops(doc, [UpdateEdgeOp(id=edge_id, changes=changes)], partial_layout=False),
            handle=handle,
        )

    def sort_nodes(self, session: EditSession, group_id: Optional[str] = None,
                   direction: Optional[str] = None,
                   handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Sort top-level nodes (or one group's members) into reading order."""
        def compute(doc: DiagramDocument) -> DiagramDocument:
            op = SortNodesOp(
                direction=direction or doc.meta.layout_direction or LayoutDirection.TB.value,
                group_id=group_id,
            )
            return self._run_ops(doc, [op])

        return self._mutate(session, "sort_nodes", compute, handle=handle, best_effort=True)

    # --- Moves ---

    def move_node(self, session: EditSession, node_id: str, x: float, y: float,
                  handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Move one node to an explicit position and pin it."""
        return self.move_nodes(session, [(node_id, x, y)], handle=handle)

    def move_nodes(self, session: EditSession, moves: Iterable[tuple[str, float, float]],
                   handle: Optional[DocumentHandle] = None) -> MutationResult:
        """
        Move several nodes in a single write.

        Moved nodes become pinned, even if they were pinned already, and the
        cached origin of each group containing a moved node is cleared.
        """
        moves = list(moves)

        def compute(doc: DiagramDocument) -> DiagramDocument:
            moved = []
            for node_id, x, y in moves:
                node = doc.get_node(node_id)
                if node is None:
                    raise ReferentialIntegrityError(f"Node \"{node_id}\" not found")
                node.x = x
                node.y = y
                node.pinned = True
                moved.append(node_id)
            invalidate_group_caches(doc, moved)
            return doc

        return self._mutate(session, "move_nodes", compute, handle=handle)

    def move_group(self, session: EditSession, group_id: str, x: float, y: float,
                   handle: Optional[DocumentHandle] = None) -> MutationResult:
        """
        Move a group and its members.

        Members are translated by the distance from the group's current origin
        (cached, or derived from members) to the new one, which is then cached.
        """
        def compute(doc: DiagramDocument) -> DiagramDocument:
            group = doc.get_group(group_id)
            if group is None:
                raise ReferentialIntegrityError(f"Group \"{group_id}\" not found")
            origin_x, origin_y = group_origin(doc, group_id)
            dx = x - (group.x if group.x is not None else origin_x)
            dy = y - (group.y if group.y is not None else origin_y)
            for node in doc.members_of(group_id):
                node.x += dx
                node.y += dy
            group.x = x
            group.y = y
            return doc

        return self._mutate(session, "move_group", compute, handle=handle)

    # --- Layout ---

    def _layout(self, doc: DiagramDocument, direction: Optional[str], force: bool) -> DiagramDocument:
        config = config_for(doc, direction, base=self._layout_config)
        doc.meta.layout_direction = config.rankdir
        if force:
            for node in doc.nodes:
                node.pinned = False
            placements = compute_forced_layout(doc, config)
        else:
            placements = compute_full_layout(doc, config)
        apply_placements(doc, placements)
        return doc

    def auto_layout_all(self, session: EditSession, direction: Optional[str] = None,
                        handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Re-layout every unpinned node; pinned nodes stay put."""
        return self._mutate(
            session, "auto_layout_all",
            lambda doc: self._layout(doc, direction, force=False),
            handle=handle, best_effort=True,
        )

    def auto_layout_force(self, session: EditSession, direction: Optional[str] = None,
                          handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Re-layout every node and clear all pins."""
        return self._mutate(
            session, "auto_layout_force",
            lambda doc: self._layout(doc, direction, force=True),
            handle=handle, best_effort=True,
        )

    # --- Undo/Redo ---

    def undo(self, session: EditSession, handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Restore the snapshot taken before the last mutation."""
        return self._step(session, session.undo_stack, session.redo_stack, "undo", handle)

    def redo(self, session: EditSession, handle: Optional[DocumentHandle] = None) -> MutationResult:
        """Re-apply the last undone mutation."""
        return self._step(session, session.redo_stack, session.undo_stack, "redo", handle)

    def _step(self, session: EditSession, source: list[str], destination: list[str],
              name: str, handle: Optional[DocumentHandle]) -> MutationResult:
        if handle is not None:
            session.set_active(handle)
        target = session.active
        if target is None or not source:
            logger.debug("%s: nothing to do", name)
            return MutationResult(success=True)

        snapshot = source[-1]
        try:
            current = target.get_text()
            self._write(target, snapshot)
        except PersistenceError as e:
            logger.warning("%s failed: %s", name, e)
            return MutationResult(success=False, error=str(e))

        source.pop()
        destination.append(current)
        while len(destination) > self._history_max:
            destination.pop(0)
        logger.info("%s: restored %s", name, target.uri)
        return MutationResult(success=True, changed=True)
