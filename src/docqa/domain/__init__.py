"""Domain layer: entities, value objects, and collaborator protocols."""
