# Infrastructure module - Logging and configuration

from .config import ClientSettings, ConfigManager
from .logging import (
    get_logger, configure_logging, reset_logging, RequestContext,
    get_request_id, generate_request_id
)

__all__ = [
    # Config
    "ClientSettings",
    "ConfigManager",
    # Logging
    "get_logger",
    "configure_logging",
    "reset_logging",
    "RequestContext",
    "get_request_id",
    "generate_request_id",
]
