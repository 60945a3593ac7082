"""Logging setup for the agent kernel service."""

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Configure the `agent_kernel` logger tree once.

    Args:
        level: Logging level, as a number or a name such as "DEBUG"

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("agent_kernel")
    logger.setLevel(level)
    logger.propagate = False

    # Clear existing handlers
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console_handler)

    return logger
