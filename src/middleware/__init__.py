"""Middleware package for the IDE orchestration API."""

from .security import SecurityMiddleware, RequestLoggingMiddleware

__all__ = [
    "SecurityMiddleware",
    "RequestLoggingMiddleware",
]
