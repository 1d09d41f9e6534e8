"""
Logging configuration for processes embedding schemavault.

Library modules only create loggers; the host process calls
setup_logging() once at startup to install a handler.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import VaultConfig


def setup_logging(config: VaultConfig) -> None:
    """Configure root logging based on configuration.

    Args:
        config: Schemavault configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
