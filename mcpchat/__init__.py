"""mcpchat -- conversational agent loop between a user, Claude and MCP tools."""

__version__ = "0.1.0"
