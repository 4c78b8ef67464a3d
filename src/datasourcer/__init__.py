"""Multi-source data connectors behind a single MCP endpoint."""

__version__ = "0.1.0"
