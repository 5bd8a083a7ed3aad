"""Moderation package integration helpers exposed to the application."""

from trustlayer.moderation.api import router
from trustlayer.moderation.domain.container import configure, configure_postgres

__all__ = ["router", "configure", "configure_postgres"]
