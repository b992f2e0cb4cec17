"""Logging configuration for mcp-pm2-ops."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "mcp_pm2_ops"


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the package logger with a stderr handler and optional rotating file.

    stdout is reserved for the MCP stdio transport, so console output goes to
    stderr.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"Could not setup file logging: {e}")
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def log_host_key_decision(logger: logging.Logger, host: str, port: int,
                          key_display: str, decision: str):
    """Log the outcome of a host key check."""
    logger.info(f"Host key {decision} - Host: {host}:{port}, Key: {key_display}")


def log_host_key_changed(logger: logging.Logger, host: str, port: int,
                         key_display: str):
    """Log a host key that differs from the pinned one."""
    logger.warning(
        f"Host key CHANGED - Host: {host}:{port}, Presented: {key_display}. "
        "Possible man-in-the-middle; operator confirmation required"
    )


def log_connection_change(logger: logging.Logger, connected: bool,
                          error: Optional[str] = None):
    """Log a connection state transition."""
    if connected:
        logger.info("Connection state changed: Connected")
    elif error:
        logger.warning(f"Connection state changed: Disconnected - Reason: {error}")
    else:
        logger.info("Connection state changed: Disconnected")
