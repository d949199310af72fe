"""Two-way CardDAV contact synchronization."""

__version__ = "0.1.0"
