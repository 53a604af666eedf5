"""Drive the ChatGPT web UI through a remote browser and expose it as MCP tools."""

__version__ = "0.1.6"
