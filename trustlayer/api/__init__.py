"""Service-level HTTP routes."""
