"""Utility modules for the IDE orchestration API."""

from .logging import setup_logging
from .id_generator import generate_request_id
from .request_helpers import extract_api_key, get_client_ip, get_environment_mode

__all__ = [
    "setup_logging",
    "generate_request_id",
    "extract_api_key",
    "get_client_ip",
    "get_environment_mode",
]
