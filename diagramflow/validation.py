"""
Structural checks for diagram documents.

Errors make a document unparsable and cause an operation batch to be rejected
as a whole. Warnings and info are reported by the validate endpoint only.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from .models import DiagramDocument


class IssueSeverity(str, Enum):
    ERROR = "error"      # Document is invalid
    WARNING = "warning"  # Probably a mistake
    INFO = "info"


@dataclass
class ValidationIssue:
    """One finding, optionally tied to the entity it is about."""
    severity: IssueSeverity
    message: str
    node_id: str | None = None
    edge_id: str | None = None
    group_id: str | None = None

    def to_dict(self) -> dict:
        data = {"type": self.severity.value, "message": self.message}
        for key in ("node_id", "edge_id", "group_id"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data


def _error(message: str, **refs) -> ValidationIssue:
    return ValidationIssue(IssueSeverity.ERROR, message, **refs)


def _warning(message: str, **refs) -> ValidationIssue:
    return ValidationIssue(IssueSeverity.WARNING, message, **refs)


def _duplicate_ids(doc: "DiagramDocument") -> Iterator[ValidationIssue]:
    # Nodes, edges and groups share one id namespace
    seen: set[str] = set()
    for kind, items in (("node", doc.nodes), ("edge", doc.edges), ("group", doc.groups or [])):
        for item in items:
            if item.id in seen:
                yield _error(f"Duplicate id \"{item.id}\" ({kind})", **{f"{kind}_id": item.id})
            seen.add(item.id)


def _dangling_references(doc: "DiagramDocument") -> Iterator[ValidationIssue]:
    node_ids = {n.id for n in doc.nodes}
    group_ids = {g.id for g in doc.groups or []}
    for edge in doc.edges:
        for end, ref in (("source", edge.source), ("target", edge.target)):
            if ref not in node_ids:
                yield _error(
                    f"Edge \"{edge.id}\" references non-existent {end} node \"{ref}\"",
                    edge_id=edge.id,
                )
    for node in doc.nodes:
        if node.group and node.group not in group_ids:
            yield _error(
                f"Node \"{node.id}\" references non-existent group \"{node.group}\"",
                node_id=node.id,
            )


def _orphans(doc: "DiagramDocument") -> Iterator[ValidationIssue]:
    # A diagram without edges is a plain inventory, not a set of orphans
    if not doc.edges:
        return
    connected = {e.source for e in doc.edges} | {e.target for e in doc.edges}
    for node in doc.nodes:
        if node.id not in connected:
            yield _warning(f"Orphan node (no connections): {node.label} ({node.id})", node_id=node.id)


def _suspicious_edges(doc: "DiagramDocument") -> Iterator[ValidationIssue]:
    pairs: set[tuple[str, str]] = set()
    for edge in doc.edges:
        if edge.source == edge.target:
            yield _warning(
                "Self-referencing edge (node points to itself)",
                edge_id=edge.id, node_id=edge.source,
            )
        pair = (edge.source, edge.target)
        if pair in pairs:
            yield _warning(f"Duplicate edge from {edge.source} to {edge.target}", edge_id=edge.id)
        pairs.add(pair)


def validate_document(doc: "DiagramDocument") -> list[ValidationIssue]:
    """
    Run every structural check over `doc`.

    Duplicate ids and dangling edge or group references are errors. Orphan
    nodes, self-loops and repeated source/target pairs are warnings. An
    empty diagram yields a single info issue.
    """
    issues = list(_duplicate_ids(doc)) + list(_dangling_references(doc))
    if not doc.nodes:
        issues.append(ValidationIssue(IssueSeverity.INFO, "Diagram has no nodes"))
        return issues
    issues.extend(_orphans(doc))
    issues.extend(_suspicious_edges(doc))
    return issues


def validation_summary(issues: list[ValidationIssue]) -> dict:
    """Counts by severity, plus `valid` (no errors)."""
    counts = {severity: 0 for severity in IssueSeverity}
    for issue in issues:
        counts[issue.severity] += 1
    return {
        "total": len(issues),
        "errors": counts[IssueSeverity.ERROR],
        "warnings": counts[IssueSeverity.WARNING],
        "info": counts[IssueSeverity.INFO],
        "valid": counts[IssueSeverity.ERROR] == 0,
    }
