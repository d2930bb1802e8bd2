"""
Logging setup for the marketplace API.

Library code logs under the "market.*" namespace with a NullHandler; the API
process installs the real handler once at start-up.
"""
import logging
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
)

_configured = False


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Attach a stderr handler to the "market" logger tree (idempotent)."""
    global _configured
    root = logging.getLogger("market")
    root.setLevel(getattr(logging, level, logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"market.{name}")
