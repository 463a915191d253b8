"""
Semantic operations - typed, batched mutations of a diagram document.

A batch is applied strictly in order against one working copy of the
document; later operations see the effects of earlier ones. The batch is
atomic: the first failing operation (or a failing final validation) discards
the working copy and the caller's document is never touched.

Partial updates use explicit patch models (NodePatch, EdgePatch, GroupPatch)
that list the mutable fields of each entity and reject unknown keys.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import DiagramError, OperationError, ReferentialIntegrityError
from .layout import (
    apply_grid_layout,
    apply_placements,
    invalidate_group_caches,
    sort_groups_by_position,
    sort_nodes_by_position,
)
from .models import (
    ArrowType,
    DiagramDocument,
    EdgeStyle,
    LayoutDirection,
    NodeColor,
    NodeShape,
    generate_id,
    make_edge,
    make_group,
    make_node,
)
from .validation import IssueSeverity, validate_document

logger = logging.getLogger(__name__)

IdGenerator = Callable[[], str]

# Changing any of these on a grouped node changes its group's box
_GEOMETRY_FIELDS = {"x", "y", "width", "height", "group"}


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, use_enum_values=True)


# --- Patch / payload models ---

class NodePatch(_Strict):
    """Mutable node fields; only the fields that are set get merged."""
    label: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = Field(default=None, gt=0)
    height: Optional[float] = Field(default=None, gt=0)
    shape: Optional[NodeShape] = None
    color: Optional[NodeColor] = None
    pinned: Optional[bool] = None
    notes: Optional[str] = None
    group: Optional[str] = None
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    properties: Optional[dict[str, Any]] = None
    security_classification: Optional[str] = Field(default=None, alias="securityClassification")
    deployment_environment: Optional[str] = Field(default=None, alias="deploymentEnvironment")


class NodeSpec(NodePatch):
    """Payload of add_node: a partial node with a required label."""
    id: Optional[str] = None
    label: str


class EdgePatch(_Strict):
    """Mutable edge fields."""
    source: Optional[str] = None
    target: Optional[str] = None
    label: Optional[str] = None
    style: Optional[EdgeStyle] = None
    arrow: Optional[ArrowType] = None
    animated: Optional[bool] = None
    protocol: Optional[str] = None
    data_types: Optional[list[str]] = Field(default=None, alias="dataTypes")


class EdgeSpec(EdgePatch):
    """Payload of add_edge: endpoints are required."""
    id: Optional[str] = None
    source: str
    target: str


class GroupPatch(_Strict):
    """Mutable group fields."""
    label: Optional[str] = Field(default=None, min_length=1)
    color: Optional[NodeColor] = None
    x: Optional[float] = None
    y: Optional[float] = None


class GroupSpec(GroupPatch):
    """Payload of add_group."""
    id: Optional[str] = None
    label: str = Field(min_length=1)


# --- Operations ---

class AddNodeOp(_Strict):
    op: Literal["add_node"] = "add_node"
    node: NodeSpec


class RemoveNodeOp(_Strict):
    op: Literal["remove_node"] = "remove_node"
    id: str


class UpdateNodeOp(_Strict):
    op: Literal["update_node"] = "update_node"
    id: str
    changes: NodePatch


class AddEdgeOp(_Strict):
    op: Literal["add_edge"] = "add_edge"
    edge: EdgeSpec


class RemoveEdgeOp(_Strict):
    op: Literal["remove_edge"] = "remove_edge"
    id: str


class UpdateEdgeOp(_Strict):
    op: Literal["update_edge"] = "update_edge"
    id: str
    changes: EdgePatch


class AddGroupOp(_Strict):
    op: Literal["add_group"] = "add_group"
    group: GroupSpec


class RemoveGroupOp(_Strict):
    op: Literal["remove_group"] = "remove_group"
    id: str


class UpdateGroupOp(_Strict):
    op: Literal["update_group"] = "update_group"
    id: str
    changes: GroupPatch


class SortNodesOp(_Strict):
    op: Literal["sort_nodes"] = "sort_nodes"
    direction: Optional[LayoutDirection] = None
    group_id: Optional[str] = Field(default=None, alias="groupId")


SemanticOp = Annotated[
    Union[
        AddNodeOp, RemoveNodeOp, UpdateNodeOp,
        AddEdgeOp, RemoveEdgeOp, UpdateEdgeOp,
        AddGroupOp, RemoveGroupOp, UpdateGroupOp,
        SortNodesOp,
    ],
    Field(discriminator="op"),
]

_OPS_ADAPTER = TypeAdapter(list[SemanticOp])


def parse_ops(raw: Iterable[Any]) -> list[SemanticOp]:
    """
    Convert JSON-shaped dicts (or op models) into typed operations.

    Raises:
        OperationError: unknown `op`, missing fields or unknown patch keys
    """
    try:
        return _OPS_ADAPTER.validate_python(list(raw))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise OperationError(f"Invalid operation: {problems}") from e


@dataclass
class OpResult:
    """Outcome of a batch: either a new document or an error message."""
    success: bool
    document: Optional[DiagramDocument] = None
    error: Optional[str] = None
    # Nodes a sort_nodes op positioned; partial layout must leave them alone
    sorted_node_ids: frozenset[str] = frozenset()


# --- Helpers ---

def _all_ids(doc: DiagramDocument) -> set[str]:
    ids = {n.id for n in doc.nodes}
    ids.update(e.id for e in doc.edges)
    ids.update(g.id for g in doc.groups or [])
    return ids


def _fresh_id(doc: DiagramDocument, requested: Optional[str], id_generator: IdGenerator) -> str:
    new_id = requested or id_generator()
    if new_id in _all_ids(doc):
        raise ReferentialIntegrityError(f"Id \"{new_id}\" already exists")
    return new_id


def _require_node(doc: DiagramDocument, node_id: str, role: str = "Node") -> None:
    if doc.get_node(node_id) is None:
        raise ReferentialIntegrityError(f"{role} \"{node_id}\" not found")


def _require_group(doc: DiagramDocument, group_id: Optional[str]) -> None:
    if group_id and doc.get_group(group_id) is None:
        raise ReferentialIntegrityError(f"Group \"{group_id}\" not found")


# --- Node operations ---

def _add_node(doc: DiagramDocument, op: AddNodeOp, id_generator: IdGenerator) -> None:
    fields = op.node.model_dump(exclude_unset=True, exclude={"id", "label"})
    _require_group(doc, fields.get("group"))
    node_id = _fresh_id(doc, op.node.id, id_generator)
    doc.nodes.append(make_node(node_id, op.node.label, **fields))


def _remove_node(doc: DiagramDocument, op: RemoveNodeOp, id_generator: IdGenerator) -> None:
    _require_node(doc, op.id)
    doc.edges = [e for e in doc.edges if e.source != op.id and e.target != op.id]
    doc.nodes = [n for n in doc.nodes if n.id != op.id]


def _update_node(doc: DiagramDocument, op: UpdateNodeOp, id_generator: IdGenerator) -> None:
    node = doc.get_node(op.id)
    if node is None:
        raise ReferentialIntegrityError(f"Node \"{op.id}\" not found")

    changes = op.changes.model_dump(exclude_unset=True)
    if node.pinned:
        # Pinned positions only change through explicit moves or forced layout
        changes.pop("x", None)
        changes.pop("y", None)
    if "group" in changes:
        _require_group(doc, changes["group"])

    touched_groups = set()
    if _GEOMETRY_FIELDS & changes.keys():
        touched_groups = {node.group, changes.get("group")}

    for key, value in changes.items():
        setattr(node, key, value)

    for group_id in touched_groups:
        group = doc.get_group(group_id) if group_id else None
        if group is not None:
            group.clear_cached_origin()


# --- Edge operations ---

def _add_edge(doc: DiagramDocument, op: AddEdgeOp, id_generator: IdGenerator) -> None:
    _require_node(doc, op.edge.source, "Source node")
    _require_node(doc, op.edge.target, "Target node")
    fields = op.edge.model_dump(exclude_unset=True, exclude={"id", "source", "target"})
    edge_id = _fresh_id(doc, op.edge.id, id_generator)
    doc.edges.append(make_edge(edge_id, op.edge.source, op.edge.target, **fields))


def _remove_edge(doc: DiagramDocument, op: RemoveEdgeOp, id_generator: IdGenerator) -> None:
    if doc.get_edge(op.id) is None:
        raise ReferentialIntegrityError(f"Edge \"{op.id}\" not found")
    doc.edges = [e for e in doc.edges if e.id != op.id]


def _update_edge(doc: DiagramDocument, op: UpdateEdgeOp, id_generator: IdGenerator) -> None:
    edge = doc.get_edge(op.id)
    if edge is None:
        raise ReferentialIntegrityError(f"Edge \"{op.id}\" not found")
    changes = op.changes.model_dump(exclude_unset=True)
    if changes.get("source") is not None:
        _require_node(doc, changes["source"], "Source node")
    if changes.get("target") is not None:
        _require_node(doc, changes["target"], "Target node")
    for key, value in changes.items():
        if key in ("source", "target") and value is None:
            continue
        setattr(edge, key, value)


# --- Group operations ---

def _add_group(doc: DiagramDocument, op: AddGroupOp, id_generator: IdGenerator) -> None:
    fields = op.group.model_dump(exclude_unset=True, exclude={"id", "label"})
    group_id = _fresh_id(doc, op.group.id, id_generator)
    if doc.groups is None:
        doc.groups = []
    doc.groups.append(make_group(group_id, op.group.label, **fields))


def _remove_group(doc: DiagramDocument, op: RemoveGroupOp, id_generator: IdGenerator) -> None:
    if doc.get_group(op.id) is None:
        raise ReferentialIntegrityError(f"Group \"{op.id}\" not found")
    doc.groups = [g for g in doc.groups or [] if g.id != op.id]
    # Members are detached, never deleted
    for node in doc.nodes:
        if node.group == op.id:
            node.group = None


def _update_group(doc: DiagramDocument, op: UpdateGroupOp, id_generator: IdGenerator) -> None:
    group = doc.get_group(op.id)
    if group is None:
        raise ReferentialIntegrityError(f"Group \"{op.id}\" not found")
    for key, value in op.changes.model_dump(exclude_unset=True).items():
        setattr(group, key, value)


# --- Sorting ---

def _sort_nodes(doc: DiagramDocument, op: SortNodesOp, id_generator: IdGenerator) -> set[str]:
    direction = op.direction or doc.meta.layout_direction or LayoutDirection.TB.value
    doc.meta.layout_direction = direction

    if op.group_id:
        _require_group(doc, op.group_id)
        inside = [n for n in doc.nodes if n.group == op.group_id]
        outside = [n for n in doc.nodes if n.group != op.group_id]
        selected = inside
    else:
        selected = [n for n in doc.nodes if not n.group]
        outside = [n for n in doc.nodes if n.group]

    if not selected:
        if not op.group_id:
            doc.groups = sort_groups_by_position(doc, direction) if doc.groups is not None else None
        return set()

    ordered = sort_nodes_by_position(selected, direction)
    start_x = min(n.x for n in selected)
    start_y = min(n.y for n in selected)
    placements = apply_grid_layout(ordered, direction, start_x, start_y)

    if op.group_id:
        doc.nodes = outside + ordered
    else:
        doc.nodes = ordered + outside
    moved = apply_placements(doc, placements)
    if op.group_id:
        # Scoped sorts always re-derive the group box
        invalidate_group_caches(doc, [n.id for n in ordered])
    else:
        doc.groups = sort_groups_by_position(doc, direction) if doc.groups is not None else None

    logger.debug("Sorted %d node(s) %s, %d moved", len(ordered), direction, len(moved))
    return {n.id for n in ordered}


_HANDLERS: dict[type, Callable[..., Optional[set[str]]]] = {
    AddNodeOp: _add_node,
    RemoveNodeOp: _remove_node,
    UpdateNodeOp: _update_node,
    AddEdgeOp: _add_edge,
    RemoveEdgeOp: _remove_edge,
    UpdateEdgeOp: _update_edge,
    AddGroupOp: _add_group,
    RemoveGroupOp: _remove_group,
    UpdateGroupOp: _update_group,
    SortNodesOp: _sort_nodes,
}


def apply_ops(
    doc: DiagramDocument,
    ops: Iterable[Any],
    id_generator: IdGenerator = generate_id,
) -> OpResult:
    """
    Apply a batch of semantic operations.

    Args:
        doc: Source document (never mutated)
        ops: Operations, as op models or JSON-shaped dicts
        id_generator: Produces ids for added entities that carry none

    Returns:
        OpResult with the new document, or with the first error
    """
    try:
        parsed = parse_ops(ops)
    except OperationError as e:
        return OpResult(success=False, error=str(e))

    working = doc.clone()
    sorted_ids: set[str] = set()
    try:
        for op in parsed:
            touched = _HANDLERS[type(op)](working, op, id_generator)
            if touched:
                sorted_ids |= touched
    except (DiagramError, ValidationError) as e:
        logger.debug("Operation batch rejected: %s", e)
        return OpResult(success=False, error=str(e))

    errors = [i.message for i in validate_document(working) if i.severity == IssueSeverity.ERROR]
    if errors:
        return OpResult(success=False, error=f"Validation failed: {', '.join(errors)}")

    return OpResult(success=True, document=working, sorted_node_ids=frozenset(sorted_ids))
