"""Application layer: the chat request pipeline and its policies."""
