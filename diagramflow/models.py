"""
Core data models for diagram documents.

These models define the canonical on-disk schema shared by the editor UI,
the backing file and AI-agent tools:
- Nodes with geometry, visual style, pin state and agent-facing metadata
- Edges connecting nodes (source/target)
- Groups that own nothing; nodes point at their group
- Metadata, viewport and the derived agent context block

Field Naming Convention:
- JSON uses camelCase (`layoutDirection`, `securityClassification`, ...)
- Python attributes are snake_case; aliases map between the two and either
  spelling is accepted on input
- Unknown fields are preserved verbatim so newer files survive a round-trip
"""

import json
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_serializer

from .errors import ParseError


class NodeShape(str, Enum):
    """Visual shapes for nodes on the canvas."""
    RECTANGLE = "rectangle"
    ROUNDED = "rounded"
    DIAMOND = "diamond"
    CYLINDER = "cylinder"


class NodeColor(str, Enum):
    """Named palette colors for nodes and groups."""
    DEFAULT = "default"
    BLUE = "blue"
    GREEN = "green"
    RED = "red"
    YELLOW = "yellow"
    PURPLE = "purple"
    GRAY = "gray"


class EdgeStyle(str, Enum):
    """Line styles for edges."""
    SOLID = "solid"
    DASHED = "dashed"
    DOTTED = "dotted"


class ArrowType(str, Enum):
    """Arrow heads for edge targets."""
    NORMAL = "normal"
    ARROW = "arrow"
    OPEN = "open"
    NONE = "none"


class LayoutDirection(str, Enum):
    """Rank axis of the layered layout and reading order of sorts."""
    TB = "TB"
    LR = "LR"
    BT = "BT"
    RL = "RL"


DEFAULT_NODE_WIDTH = 160
DEFAULT_NODE_HEIGHT = 48

# Group box = members' bounding box grown by padding, plus a label strip on top
GROUP_PADDING = 20
GROUP_LABEL_HEIGHT = 28


def generate_id() -> str:
    """Generate a short random identifier (8 URL-safe characters)."""
    return secrets.token_urlsafe(6)


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    now = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return now.replace("+00:00", "Z")


class DiagramModel(BaseModel):
    """Shared config: keep unknown fields, accept aliases and field names."""
    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    @model_serializer(mode="wrap")
    def _omit_unset_optionals(self, handler):
        # Unset declared optionals are omitted; unknown fields keep their nulls
        data = handler(self)
        if not isinstance(data, dict):
            return data
        extra = self.__pydantic_extra__ or {}
        return {k: v for k, v in data.items() if v is not None or k in extra}


class DiagramNode(DiagramModel):
    """A node in the diagram."""
    id: str = Field(min_length=1)
    label: str
    x: float
    y: float
    width: float = Field(default=DEFAULT_NODE_WIDTH, gt=0)
    height: float = Field(default=DEFAULT_NODE_HEIGHT, gt=0)
    shape: NodeShape = NodeShape.RECTANGLE
    color: NodeColor = NodeColor.DEFAULT
    # Pinned nodes are never moved by non-forced layout
    pinned: bool = False
    notes: Optional[str] = None
    group: Optional[str] = None
    # Agent-facing semantic metadata, opaque to layout
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    properties: Optional[dict[str, Any]] = None
    security_classification: Optional[str] = Field(default=None, alias="securityClassification")
    deployment_environment: Optional[str] = Field(default=None, alias="deploymentEnvironment")

    def center(self) -> tuple[float, float]:
        """Get the center point of the node."""
        return (self.x + self.width / 2, self.y + self.height / 2)

    def bounds(self) -> tuple[float, float, float, float]:
        """Get the bounding box (x, y, right, bottom)."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


class DiagramEdge(DiagramModel):
    """A directed edge connecting two nodes."""
    id: str = Field(min_length=1)
    source: str
    target: str
    label: Optional[str] = None
    style: EdgeStyle = EdgeStyle.SOLID
    arrow: ArrowType = ArrowType.ARROW
    animated: Optional[bool] = None
    protocol: Optional[str] = None
    data_types: Optional[list[str]] = Field(default=None, alias="dataTypes")


class DiagramGroup(DiagramModel):
    """
    A visual group of nodes.

    `x`/`y` is only a cache of the rendered top-left corner; it is cleared
    whenever a member moves and re-derived from the members at render time.
    """
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    color: Optional[NodeColor] = None
    x: Optional[float] = None
    y: Optional[float] = None

    def clear_cached_origin(self) -> None:
        self.x = None
        self.y = None


class DiagramMeta(DiagramModel):
    """Metadata about the diagram."""
    title: str = Field(min_length=1)
    created: str = Field(min_length=1)
    modified: str = Field(min_length=1)
    version: Optional[str] = None
    description: Optional[str] = None
    layout_direction: Optional[LayoutDirection] = Field(default=None, alias="layoutDirection")
    abstraction_level: Optional[Literal["context", "container", "component"]] = Field(
        default=None, alias="abstractionLevel"
    )
    owners: Optional[list[str]] = None
    glossary: Optional[dict[str, str]] = None


class Viewport(DiagramModel):
    """Pan/zoom state of the editor; opaque to the core."""
    x: float = 0
    y: float = 0
    zoom: float = Field(default=1, gt=0)


class AgentContext(DiagramModel):
    """
    Derived summary consumed by AI agents reading the raw file.

    Regenerated after every mutation; never hand-edited.
    """
    format: str = "diagramflow-v1"
    generated_at: str = Field(alias="generatedAt")
    summary: str
    node_index: list[dict[str, Any]] = Field(default_factory=list, alias="nodeIndex")
    edge_index: list[dict[str, Any]] = Field(default_factory=list, alias="edgeIndex")
    group_index: list[dict[str, Any]] = Field(default_factory=list, alias="groupIndex")
    glossary: Optional[dict[str, str]] = None
    insights: Optional[list[str]] = None
    usage: str = ""


class DiagramDocument(DiagramModel):
    """
    The complete diagram structure.
    This is what gets saved to/loaded from the backing file.
    """
    meta: DiagramMeta
    nodes: list[DiagramNode] = Field(default_factory=list)
    edges: list[DiagramEdge] = Field(default_factory=list)
    groups: Optional[list[DiagramGroup]] = None
    viewport: Optional[Viewport] = None
    agent_context: Optional[AgentContext] = Field(default=None, alias="agentContext")

    def get_node(self, node_id: str) -> Optional[DiagramNode]:
        """Get a node by ID (O(n))."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[DiagramEdge]:
        """Get an edge by ID (O(n))."""
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def get_group(self, group_id: str) -> Optional[DiagramGroup]:
        """Get a group by ID (O(n))."""
        for group in self.groups or []:
            if group.id == group_id:
                return group
        return None

    def members_of(self, group_id: str) -> list[DiagramNode]:
        return [n for n in self.nodes if n.group == group_id]

    def clone(self) -> "DiagramDocument":
        """Deep copy; snapshots never share mutable substructure."""
        return self.model_copy(deep=True)


# --- Factories ---

def make_node(node_id: str, label: str, **fields: Any) -> DiagramNode:
    """Create a fully defaulted node at the origin (a partial-layout candidate)."""
    fields.setdefault("x", 0)
    fields.setdefault("y", 0)
    return DiagramNode(id=node_id, label=label, **fields)


def make_edge(edge_id: str, source: str, target: str, **fields: Any) -> DiagramEdge:
    """Create a fully defaulted edge."""
    return DiagramEdge(id=edge_id, source=source, target=target, **fields)


def make_group(group_id: str, label: str, **fields: Any) -> DiagramGroup:
    """Create a group with no cached origin unless one is given."""
    return DiagramGroup(id=group_id, label=label, **fields)


def create_empty_document(title: str = "Untitled Diagram") -> DiagramDocument:
    """Create a new empty diagram."""
    now = utc_now_iso()
    return DiagramDocument(
        meta=DiagramMeta(version="1.0", title=title, created=now, modified=now),
        nodes=[],
        edges=[],
        groups=[],
        viewport=Viewport(x=0, y=0, zoom=1),
    )


# --- Derived reads ---

def group_origin(doc: DiagramDocument, group_id: str) -> tuple[float, float]:
    """Top-left of a group's box derived from its members (0,0 when empty)."""
    members = doc.members_of(group_id)
    if not members:
        return (0.0, 0.0)
    return (
        min(n.x for n in members) - GROUP_PADDING,
        min(n.y for n in members) - GROUP_PADDING - GROUP_LABEL_HEIGHT,
    )


# --- Serialization ---

def document_to_json_dict(doc: DiagramDocument, exclude: Optional[dict] = None) -> dict:
    """Convert to a JSON-serializable dict with wire (camelCase) field names."""
    return doc.model_dump(mode="json", by_alias=True, exclude=exclude)


def serialize_document(doc: DiagramDocument) -> str:
    """Pretty-printed JSON text written to the backing file."""
    return json.dumps(document_to_json_dict(doc), indent=2, ensure_ascii=False)


def content_fingerprint(doc: DiagramDocument) -> str:
    """Serialized content ignoring the modified stamp and the derived context."""
    data = document_to_json_dict(doc, exclude={"meta": {"modified"}, "agent_context": True})
    return json.dumps(data, sort_keys=True)


def parse_document(text: str) -> DiagramDocument:
    """
    Parse a serialized document.

    Raises:
        ParseError: malformed JSON, missing/mistyped required fields, or a
            violated invariant (duplicate ids, dangling references).
    """
    from .validation import IssueSeverity, validate_document

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Failed to parse diagram document: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("Failed to parse diagram document: root must be an object")

    try:
        doc = DiagramDocument.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ParseError(f"Failed to parse diagram document: {problems}") from e

    errors = [i.message for i in validate_document(doc) if i.severity == IssueSeverity.ERROR]
    if errors:
        raise ParseError(f"Failed to parse diagram document: {', '.join(errors)}")
    return doc
