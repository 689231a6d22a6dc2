"""MCP server surface for the reference engine."""
