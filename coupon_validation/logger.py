"""
Logging configuration for the coupon validation service.

Provides a package logger configured from the LOG_LEVEL environment variable.
"""
import logging
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logger = logging.getLogger("coupon_validation")
logger.setLevel(LOG_LEVEL)

if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

# Avoid duplicate lines through the root logger
logger.propagate = False


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Optional child name, appended to 'coupon_validation'

    Returns:
        Logger instance
    """
    if name:
        return logging.getLogger(f"coupon_validation.{name}")
    return logger
