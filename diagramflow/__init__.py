"""
DiagramFlow core - document model, semantic operations, layout and agent context.

This package is pure computation: every entry point takes a document value
and returns a new one (or a list of placements). Persistence, history and
the active-document handle live in diagramflow_server.
"""

from .errors import (
    DiagramError,
    ParseError,
    ReferentialIntegrityError,
    OperationError,
    NoActiveDocumentError,
    PersistenceError,
)

from .models import (
    # Enums
    NodeShape,
    NodeColor,
    EdgeStyle,
    ArrowType,
    LayoutDirection,
    # Core models
    DiagramNode,
    DiagramEdge,
    DiagramGroup,
    DiagramMeta,
    Viewport,
    AgentContext,
    DiagramDocument,
    # Factories and serialization
    generate_id,
    make_node,
    make_edge,
    make_group,
    create_empty_document,
    group_origin,
    parse_document,
    serialize_document,
    content_fingerprint,
)

from .validation import validate_document, validation_summary, ValidationIssue, IssueSeverity
from .operations import NodePatch, EdgePatch, GroupPatch, OpResult, apply_ops, parse_ops
from .layout import (
    LayoutConfig,
    LayoutPlacement,
    compute_partial_layout,
    compute_full_layout,
    compute_forced_layout,
    apply_placements,
    sort_nodes_by_position,
    apply_grid_layout,
)
from .agent_context import generate_agent_context

__all__ = [
    # Errors
    "DiagramError",
    "ParseError",
    "ReferentialIntegrityError",
    "OperationError",
    "NoActiveDocumentError",
    "PersistenceError",
    # Enums
    "NodeShape",
    "NodeColor",
    "EdgeStyle",
    "ArrowType",
    "LayoutDirection",
    # Models
    "DiagramNode",
    "DiagramEdge",
    "DiagramGroup",
    "DiagramMeta",
    "Viewport",
    "AgentContext",
    "DiagramDocument",
    "generate_id",
    "make_node",
    "make_edge",
    "make_group",
    "create_empty_document",
    "group_origin",
    "parse_document",
    "serialize_document",
    "content_fingerprint",
    # Validation
    "validate_document",
    "validation_summary",
    "ValidationIssue",
    "IssueSeverity",
    # Operations
    "NodePatch",
    "EdgePatch",
    "GroupPatch",
    "OpResult",
    "apply_ops",
    "parse_ops",
    # Layout
    "LayoutConfig",
    "LayoutPlacement",
    "compute_partial_layout",
    "compute_full_layout",
    "compute_forced_layout",
    "apply_placements",
    "sort_nodes_by_position",
    "apply_grid_layout",
    # Agent context
    "generate_agent_context",
]
