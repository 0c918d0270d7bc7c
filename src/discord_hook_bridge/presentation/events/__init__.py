"""Discord event handlers."""
