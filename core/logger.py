"""
Service Logger Setup

Configures the stdlib logging tree for a microservice from LoggingConfig.

Usage:
    from core.logger import setup_service_logger

    logger = setup_service_logger("credit_ledger_service")
    logger.info("Service starting")
"""

import logging
import sys
from typing import Optional

from core.config.logging_config import LoggingConfig


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure handlers for a service and return its named logger.

    Args:
        service_name: Logger name (also used as the file handler's prefix)
        level: Optional level override (DEBUG, INFO, ...)
        config: Optional LoggingConfig (loaded from environment if not provided)

    Returns:
        Configured logger for the service
    """
    if config is None:
        config = LoggingConfig.from_env()

    log_level = getattr(logging, (level or config.log_level).upper(), logging.INFO)
    formatter = logging.Formatter(config.log_format)

    root = logging.getLogger()
    root.setLevel(log_level)

    # Avoid stacking handlers when a service is re-initialised
    for handler in list(root.handlers):
        if getattr(handler, "_service_logger", False):
            root.removeHandler(handler)

    if config.enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._service_logger = True
        root.addHandler(console)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        file_handler._service_logger = True
        root.addHandler(file_handler)

    logger = logging.getLogger(service_name)
    logger.setLevel(log_level)
    logger.debug(f"Logger configured for {service_name} ({config.environment})")
    return logger


__all__ = ["setup_service_logger"]
