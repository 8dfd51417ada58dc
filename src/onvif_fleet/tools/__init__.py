"""MCP tools exposing the device manager."""
