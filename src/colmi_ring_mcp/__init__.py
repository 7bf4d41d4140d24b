"""MCP server and BLE protocol client for Colmi smart rings."""

__version__ = "0.1.0"
