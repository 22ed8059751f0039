"""Moderation package integration helpers exposed to the application."""

from dancefeedback.moderation.api import router
from dancefeedback.moderation.domain.container import configure, configure_postgres
from dancefeedback.moderation.workers.runner import spawn_worker

__all__ = ["router", "configure", "configure_postgres", "spawn_worker"]
