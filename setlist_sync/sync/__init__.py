"""Entity sync handlers."""
