"""Identifier helpers for request tracking."""

import uuid


def generate_request_id() -> str:
    """Generate a short request ID for error tracking and log correlation."""
    return uuid.uuid4().hex[:16]
