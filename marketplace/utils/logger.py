"""
Logging configuration for the marketplace backend.

All modules log through the "marketplace" logger tree. The level comes from the
LOG_LEVEL environment variable (default: INFO).
"""
import logging
import os
import sys
from typing import Any

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logger = logging.getLogger("marketplace")
logger.setLevel(LOG_LEVEL)

if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    logger.addHandler(console_handler)

# Uvicorn installs its own root handlers; keep ours from printing twice.
logger.propagate = False


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Optional suffix (e.g. "cart" -> "marketplace.cart")
    """
    if name:
        return logging.getLogger(f"marketplace.{name}")
    return logger


def log_event(log: logging.Logger, component: str, method: str, level: int = logging.INFO, **fields: Any) -> None:
    """
    Emit one key=value line, e.g. ``cart: method=add_item user_id=u1 result=success``.

    Fields with a None value are skipped so optional context does not clutter the line.
    """
    if not log.isEnabledFor(level):
        return
    parts = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    log.log(level, "%s: method=%s %s", component, method, parts)
