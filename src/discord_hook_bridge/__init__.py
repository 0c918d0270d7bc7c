"""Discord bridge for terminal agent hooks."""

__version__ = "0.1.0"
