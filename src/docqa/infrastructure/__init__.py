"""Concrete collaborators: SQLite stores, sqlite-vec retrieval, embedders, PydanticAI backends."""
