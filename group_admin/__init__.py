"""Web interface for managing directory groups through the graph API."""

__version__ = "0.1.0"
