"""Logging configuration shared by the orders microservices."""

import sys
from typing import Optional

from loguru import logger as loguru_logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[service]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[service]} | {name}:{function}:{line} - {message}"


def setup_service_logger(
    service_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
) -> loguru_logger:
    """Configure the process-wide loguru sinks and return a service logger.

    Args:
        service_name: Name of the service (e.g., 'orders-service')
        log_level: Logging level (default: INFO)
        log_file: Optional path to a rotating log file

    Returns:
        logger: loguru logger bound with the ``service`` extra
    """
    loguru_logger.remove()
    loguru_logger.configure(extra={"service": service_name})

    loguru_logger.add(
        sys.stderr,
        level=log_level,
        format=CONSOLE_FORMAT,
        colorize=True,
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        loguru_logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="1 week",
            compression="gz",
            enqueue=True,
        )

    return loguru_logger.bind(service=service_name)


def get_kafka_logger(service_name: str) -> loguru_logger:
    """Get a logger for Kafka request/reply traffic of a service.

    Unlike ``setup_service_logger`` this does not touch the configured sinks,
    so it is safe to call from any module after startup.

    Args:
        service_name: Name of the service

    Returns:
        logger: Logger bound with the Kafka component context
    """
    return loguru_logger.bind(service=f"{service_name}.kafka")
