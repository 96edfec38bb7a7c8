"""Presentation layer: HTTP schemas, routes, and error translation."""
