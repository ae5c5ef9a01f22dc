"""Centralized logging configuration.

Logs go to stderr: stdout is reserved for the MCP stdio transport.
"""

from __future__ import annotations

import logging
import sys

from config import CONFIG, Config

LOG_FORMAT = "[chat-rag] %(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def setup_logging(config: Config | None = None) -> None:
    """Configure the root logger once per process."""
    global _configured
    if _configured:
        return
    config = config or CONFIG
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (usually called with __name__)."""
    return logging.getLogger(name)
