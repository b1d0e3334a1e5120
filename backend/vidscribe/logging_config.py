"""Structured logging configuration for the application."""

import logging
import logging.config
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from vidscribe.config import settings


def setup_logging() -> None:
    """Configure structured logging with file output and appropriate levels."""

    log_dir = Path("./logs")

    extra_handlers: list[str] = []
    # File logging is only disabled during automated tests.
    disable_file_handlers = settings.is_testing
    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": "DEBUG" if settings.is_development else "INFO",
            "formatter": "json" if settings.is_production else "detailed",
            "stream": sys.stdout,
        },
    }

    if not disable_file_handlers:
        log_dir.mkdir(exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        handlers.update(
            {
                "file": {
                    "class": "logging.FileHandler",
                    "level": "INFO",
                    "formatter": "detailed",
                    "filename": str(log_dir / f"vidscribe-{timestamp}.log"),
                    "encoding": "utf-8",
                },
                "error_file": {
                    "class": "logging.FileHandler",
                    "level": "ERROR",
                    "formatter": "detailed",
                    "filename": str(log_dir / f"error-{timestamp}.log"),
                    "encoding": "utf-8",
                },
            }
        )
        extra_handlers = ["file", "error_file"]

    handler_names = ["console"] + extra_handlers

    log_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "simple": {
                "format": "%(levelname)s - %(message)s",
            },
            "json": (
                {
                    "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                    "format": "%(asctime)s %(name)s %(levelname)s %(filename)s %(lineno)d %(message)s",
                }
                if settings.is_production
                else {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                }
            ),
        },
        "handlers": handlers,
        "loggers": {
            "vidscribe": {
                "level": settings.log_level,
                "handlers": handler_names,
                "propagate": False,
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": handler_names,
                "propagate": False,
            },
            "httpx": {
                "level": "WARNING",
                "handlers": handler_names,
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "WARNING" if (settings.is_production or settings.is_testing) else "INFO",
                "handlers": handler_names,
                "propagate": False,
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": handler_names,
        },
    }

    logging.config.dictConfig(log_config)

    logger = logging.getLogger("vidscribe")
    logger.info(
        f"Logging initialized - Environment: {settings.environment}, "
        f"Level: {settings.log_level}"
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured logger instance
    """
    if name.startswith("vidscribe."):
        return logging.getLogger(name)
    return logging.getLogger(f"vidscribe.{name}")
