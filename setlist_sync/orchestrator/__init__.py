"""Interactive batch orchestration over the entity sync handlers."""
