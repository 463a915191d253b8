"""DiagramFlow MCP tool server."""
