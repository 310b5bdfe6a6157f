"""
Logging setup for applications embedding the resource client.

The library itself only emits records through module loggers with
structured `extra` context; setup_logging() is for the host process and
takes the same ClientConfig the host passes to ResourceClient.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ClientConfig


def setup_logging(config: ClientConfig | None = None) -> None:
    """Configure root logging from the observability section of the config.

    Args:
        config: Client configuration (loaded from env if not provided)
    """
    config = config or ClientConfig.from_env()
    settings = config.observability
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Driver chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("motor").setLevel(logging.WARNING)
