"""Tool registry and meta tools."""
