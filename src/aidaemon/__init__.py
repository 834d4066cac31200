"""aiDAEMON core: MCP client, tool registry, policy engine, model router and agent loop."""

__version__ = "1.0.0"
