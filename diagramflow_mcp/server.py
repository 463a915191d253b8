#!/usr/bin/env python3
"""
DiagramFlow MCP Server

Provides MCP tools for AI agents to read and modify the open diagram.
Every mutating tool maps its input onto a batch of semantic operations and
posts it to the backend, so a tool call is applied atomically (all or
nothing) and is undoable as one step.
"""

import json
import logging
from typing import Any, Optional

import httpx
from mcp.server.fastmcp import FastMCP

from diagramflow_server.config import Settings

logger = logging.getLogger(__name__)

# Backend API URL
API_BASE = Settings.from_env().api_base

# Create MCP server
mcp = FastMCP("diagramflow")

NODE_INPUT_FIELDS = ("label", "shape", "color", "notes", "group", "type", "tags", "properties",
                     "securityClassification", "deploymentEnvironment")
EDGE_INPUT_FIELDS = ("source", "target", "label", "style", "arrow", "animated", "protocol", "dataTypes")
GROUP_INPUT_FIELDS = ("label", "color")


# --- HTTP Client Helper ---

def api_request(method: str, endpoint: str, **kwargs) -> dict:
    """Make a request to the DiagramFlow backend."""
    url = f"{API_BASE}{endpoint}"
    with httpx.Client(timeout=30.0) as client:
        if method == "GET":
            response = client.get(url, params=kwargs.get("params"))
        elif method == "POST":
            response = client.post(url, json=kwargs.get("json"), params=kwargs.get("params"))
        else:
            raise ValueError(f"Unknown method: {method}")

        if response.status_code >= 400:
            error = response.json().get("detail", "Unknown error")
            raise RuntimeError(f"API error: {error}")

        return response.json()


def apply_ops(ops: list[dict]) -> str:
    """Post one op batch and render the outcome for the agent."""
    if not ops:
        return json.dumps({"success": True, "changed": False, "message": "Nothing to do"}, indent=2)
    try:
        result = api_request("POST", "/ops", json={"ops": ops})
    except RuntimeError as e:
        logger.debug("Op batch failed: %s", e)
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    result.pop("diagram", None)
    result["applied"] = len(ops)
    return json.dumps(result, indent=2)


# ============================================================================
# OP BUILDERS
# ============================================================================

def _pick(item: dict, fields: tuple[str, ...]) -> dict:
    return {k: item[k] for k in fields if k in item and item[k] is not None}


def build_add_node_ops(nodes: list[dict]) -> list[dict]:
    return [{"op": "add_node", "node": _pick(n, NODE_INPUT_FIELDS)} for n in nodes]


def build_update_node_ops(updates: list[dict]) -> list[dict]:
    return [
        {"op": "update_node", "id": u["id"], "changes": _pick(u, NODE_INPUT_FIELDS)}
        for u in updates
    ]


def build_remove_ops(kind: str, ids: list[str]) -> list[dict]:
    """kind is one of node, edge, group."""
    return [{"op": f"remove_{kind}", "id": i} for i in ids]


def build_add_edge_ops(edges: list[dict]) -> list[dict]:
    return [{"op": "add_edge", "edge": _pick(e, EDGE_INPUT_FIELDS)} for e in edges]


def build_update_edge_ops(updates: list[dict]) -> list[dict]:
    return [
        {"op": "update_edge", "id": u["id"], "changes": _pick(u, EDGE_INPUT_FIELDS)}
        for u in updates
    ]


def build_add_group_ops(groups: list[dict]) -> list[dict]:
    return [{"op": "add_group", "group": _pick(g, GROUP_INPUT_FIELDS)} for g in groups]


def build_update_group_ops(updates: list[dict]) -> list[dict]:
    return [
        {"op": "update_group", "id": u["id"], "changes": _pick(u, GROUP_INPUT_FIELDS)}
        for u in updates
    ]


def build_sort_op(direction: Optional[str] = None, group_id: Optional[str] = None) -> dict:
    op: dict[str, Any] = {"op": "sort_nodes"}
    if direction:
        op["direction"] = direction
    if group_id:
        op["groupId"] = group_id
    return op


# ============================================================================
# INSPECTION TOOLS
# ============================================================================

@mcp.tool()
def diagram_get() -> str:
    """
    Get the current diagram with its agent context.

    The agentContext block summarises the diagram by label: use it to
    understand what the diagram depicts before making changes. Node, edge
    and group ids in `document` are what the update/remove tools expect.
    """
    try:
        result = api_request("GET", "/diagram")
    except RuntimeError as e:
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    return json.dumps(result, indent=2)


# ============================================================================
# NODE TOOLS
# ============================================================================

@mcp.tool()
def diagram_add_nodes(nodes: list[dict]) -> str:
    """
    Add nodes to the diagram. New nodes are placed automatically.

    Args:
        nodes: Objects with `label` (required) and optional `shape`
            (rectangle, rounded, diamond, cylinder), `color` (default, blue,
            green, red, yellow, purple, gray), `notes`, `group` (group id),
            `type`, `tags`, `properties`
    """
    return apply_ops(build_add_node_ops(nodes))


@mcp.tool()
def diagram_update_nodes(updates: list[dict]) -> str:
    """
    Update existing nodes.

    Args:
        updates: Objects with `id` plus any of the fields accepted by
            diagram_add_nodes
    """
    return apply_ops(build_update_node_ops(updates))


@mcp.tool()
def diagram_remove_nodes(ids: list[str]) -> str:
    """
    Remove nodes by id. Edges touching them are removed too.
    """
    return apply_ops(build_remove_ops("node", ids))


# ============================================================================
# EDGE TOOLS
# ============================================================================

@mcp.tool()
def diagram_add_edges(edges: list[dict]) -> str:
    """
    Connect nodes.

    Args:
        edges: Objects with `source` and `target` node ids and optional
            `label`, `style` (solid, dashed, dotted), `arrow` (normal, arrow,
            open, none), `animated`, `protocol`, `dataTypes`
    """
    return apply_ops(build_add_edge_ops(edges))


@mcp.tool()
def diagram_update_edges(updates: list[dict]) -> str:
    """
    Update existing edges.

    Args:
        updates: Objects with `id` plus any of the fields accepted by
            diagram_add_edges
    """
    return apply_ops(build_update_edge_ops(updates))


@mcp.tool()
def diagram_remove_edges(ids: list[str]) -> str:
    """Remove edges by id."""
    return apply_ops(build_remove_ops("edge", ids))


@mcp.tool()
def diagram_reconnect_edge(edge_id: str, source: str, target: str) -> str:
    """
    Point an existing edge at a new source and target node.
    """
    try:
        result = api_request("POST", f"/edges/{edge_id}/reconnect", json={"source": source, "target": target})
    except RuntimeError as e:
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    result.pop("diagram", None)
    return json.dumps(result, indent=2)


# ============================================================================
# GROUP TOOLS
# ============================================================================

@mcp.tool()
def diagram_add_groups(groups: list[dict]) -> str:
    """
    Create groups. Assign nodes with diagram_update_nodes(group=<id>).

    Args:
        groups: Objects with `label` (required) and optional `color`
    """
    return apply_ops(build_add_group_ops(groups))


@mcp.tool()
def diagram_update_groups(updates: list[dict]) -> str:
    """
    Update existing groups.

    Args:
        updates: Objects with `id` plus `label` and/or `color`
    """
    return apply_ops(build_update_group_ops(updates))


@mcp.tool()
def diagram_remove_groups(ids: list[str]) -> str:
    """Remove groups by id. Member nodes are kept and ungrouped."""
    return apply_ops(build_remove_ops("group", ids))


# ============================================================================
# LAYOUT TOOLS
# ============================================================================

@mcp.tool()
def diagram_sort_nodes(direction: Optional[str] = None, group_id: Optional[str] = None) -> str:
    """
    Sort nodes into reading order for a direction and pack them into a grid.

    Args:
        direction: TB, LR, BT or RL (defaults to the diagram's direction)
        group_id: Only sort this group's members
    """
    return apply_ops([build_sort_op(direction, group_id)])


@mcp.tool()
def diagram_auto_layout(direction: Optional[str] = None, force: bool = False) -> str:
    """
    Arrange the diagram with a layered layout.

    Args:
        direction: TB, LR, BT or RL (defaults to the diagram's direction)
        force: Also move pinned (hand-placed) nodes and unpin them
    """
    payload: dict[str, Any] = {"force": force}
    if direction:
        payload["direction"] = direction
    try:
        result = api_request("POST", "/layout/auto", json=payload)
    except RuntimeError as e:
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    result.pop("diagram", None)
    return json.dumps(result, indent=2)


# ============================================================================
# HISTORY TOOLS
# ============================================================================

@mcp.tool()
def diagram_undo() -> str:
    """Undo the last change."""
    try:
        result = api_request("POST", "/undo")
    except RuntimeError as e:
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    return json.dumps(result, indent=2)


@mcp.tool()
def diagram_redo() -> str:
    """Redo the last undone change."""
    try:
        result = api_request("POST", "/redo")
    except RuntimeError as e:
        return json.dumps({"success": False, "error": str(e)}, indent=2)
    return json.dumps(result, indent=2)


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
