"""
Agent context - a compact, agent-readable summary of a diagram.

The block is written into every saved document so that AI agents reading the
raw file (without the editor running) can understand what it depicts:
- Labels, not opaque ids, are the primary identifiers
- Empty and default values are omitted to keep the block small
- Rule-based insights surface deprecations, security boundaries and orphans

generate_agent_context is a pure function of the document: calling it twice
on the same snapshot yields equal results.
"""

from typing import Any

from .models import AgentContext, DiagramDocument, DiagramNode, EdgeStyle

CONTEXT_FORMAT = "diagramflow-v1"

USAGE_HINT = (
    "When the DiagramFlow tool server is running, use the diagram_get / "
    "diagram_add_nodes / diagram_add_edges / diagram_add_groups / "
    "diagram_update_nodes / diagram_update_edges / diagram_update_groups / "
    "diagram_remove_nodes / diagram_remove_edges / diagram_remove_groups tools "
    "to read and modify this diagram programmatically."
)

SUMMARY_NODE_LIMIT = 5
SENSITIVE_CLASSIFICATIONS = ("pii-data-store", "security-boundary")


def generate_agent_context(doc: DiagramDocument) -> AgentContext:
    """Build a fresh AgentContext from the current document state."""
    labels = {n.id: n.label for n in doc.nodes}

    node_index = [_node_entry(n) for n in doc.nodes]

    edge_index: list[dict[str, Any]] = []
    for edge in doc.edges:
        entry: dict[str, Any] = {
            "from": labels.get(edge.source, edge.source),
            "to": labels.get(edge.target, edge.target),
        }
        if edge.label:
            entry["label"] = edge.label
        if edge.style != EdgeStyle.SOLID.value:
            entry["style"] = edge.style
        if edge.protocol:
            entry["protocol"] = edge.protocol
        if edge.data_types:
            entry["dataTypes"] = list(edge.data_types)
        edge_index.append(entry)

    group_index = [
        {"group": g.label, "members": [n.label for n in doc.members_of(g.id)]}
        for g in doc.groups or []
    ]

    insights = build_insights(doc)

    return AgentContext(
        format=CONTEXT_FORMAT,
        generated_at=doc.meta.modified,
        summary=build_summary(doc, group_index),
        node_index=node_index,
        edge_index=edge_index,
        group_index=group_index,
        glossary=dict(doc.meta.glossary) if doc.meta.glossary else None,
        insights=insights or None,
        usage=USAGE_HINT,
    )


def _node_entry(node: DiagramNode) -> dict[str, Any]:
    entry: dict[str, Any] = {"id": node.id, "label": node.label}
    if node.type:
        entry["type"] = node.type
    if node.notes:
        entry["notes"] = node.notes
    if node.group:
        entry["group"] = node.group
    if node.tags:
        entry["tags"] = list(node.tags)
    if node.properties:
        entry["properties"] = dict(node.properties)
    if node.security_classification:
        entry["securityClassification"] = node.security_classification
    if node.deployment_environment:
        entry["deploymentEnvironment"] = node.deployment_environment
    return entry


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def build_summary(doc: DiagramDocument, group_index: list[dict[str, Any]]) -> str:
    """One paragraph: title, counts, first labels, level, owners, groups."""
    title = doc.meta.title or "Untitled Diagram"
    description = f" {doc.meta.description}" if doc.meta.description else ""

    if not doc.nodes:
        return f"\"{title}\" is an empty diagram.{description}"

    names = ", ".join(f"\"{n.label}\"" for n in doc.nodes[:SUMMARY_NODE_LIMIT])
    extra = len(doc.nodes) - SUMMARY_NODE_LIMIT
    more = f" and {extra} more" if extra > 0 else ""

    level = f" Abstraction level: {doc.meta.abstraction_level}." if doc.meta.abstraction_level else ""
    owners = f" Owned by: {', '.join(doc.meta.owners)}." if doc.meta.owners else ""
    groups = ""
    if group_index:
        parts = ", ".join(f"\"{g['group']}\" ({_plural(len(g['members']), 'node')})" for g in group_index)
        groups = f" Grouped into: {parts}."

    return (
        f"\"{title}\" contains {_plural(len(doc.nodes), 'node')} ({names}{more}) "
        f"connected by {_plural(len(doc.edges), 'edge')}."
        f"{level}{owners}{groups}{description}"
    )


def build_insights(doc: DiagramDocument) -> list[str]:
    """
    Rule scans over nodes and edges.

    Flags status properties, deprecated tags, sensitive security
    classifications, technical debt, ADR references and orphan nodes.
    """
    insights: list[str] = []

    for node in doc.nodes:
        props = node.properties or {}
        status = props.get("status")
        if isinstance(status, str) and status:
            if status == "deprecated":
                insights.append(f"\"{node.label}\" is deprecated; avoid adding new dependencies to it.")
            elif status.startswith("being-replaced-by:"):
                successor = status[len("being-replaced-by:"):].strip()
                insights.append(
                    f"\"{node.label}\" is being replaced by \"{successor}\"; prefer using the successor."
                )
            else:
                insights.append(f"\"{node.label}\" status: {status}.")

        if node.tags and "deprecated" in node.tags:
            insights.append(f"\"{node.label}\" is tagged as deprecated.")

        if node.security_classification in SENSITIVE_CLASSIFICATIONS:
            insights.append(
                f"\"{node.label}\" is classified as \"{node.security_classification}\"; "
                "apply extra caution when modifying data access patterns."
            )

        if props.get("technicalDebt"):
            insights.append(f"\"{node.label}\" has known technical debt: {props['technicalDebt']}")

        if props.get("adr"):
            insights.append(f"\"{node.label}\" is governed by ADR: {props['adr']}")

    # Orphans only mean something once the diagram has connections at all
    if doc.edges:
        connected = {e.source for e in doc.edges} | {e.target for e in doc.edges}
        orphans = [n.label for n in doc.nodes if n.id not in connected]
        if orphans:
            insights.append(
                "Orphan nodes (no connections): " + ", ".join(f"\"{label}\"" for label in orphans) + "."
            )

    return insights
