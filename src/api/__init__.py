"""API endpoints for the IDE orchestration API."""

from . import health, ide

__all__ = ["health", "ide"]
