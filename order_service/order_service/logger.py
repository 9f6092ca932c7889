"""Logger module for the orders service."""

from logging_utils.config import setup_service_logger

from .config import get_settings

_settings = get_settings()

logger = setup_service_logger(
    _settings.service_name,
    log_level=_settings.log_level,
    log_file=_settings.log_file,
)

__all__ = ["logger"]
