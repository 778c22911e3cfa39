"""Structured logging configuration using dictConfig."""
import logging
import logging.config
import sys
from typing import Dict, Any, Optional

from .settings import get_settings


class ServiceFilter(logging.Filter):
    """Stamp every record with the name of the running service."""

    def __init__(self, service_name: str = "newsweave"):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


def get_logging_config(service_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the dictConfig for a service.

    JSON lines in production (python-json-logger), a readable console
    format everywhere else.

    Args:
        service_name: Name stamped on every record (e.g. "api", "ingestor")

    Returns:
        Logging configuration dictionary
    """
    settings = get_settings()
    service = service_name or "newsweave"
    production = settings.environment == "production"

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "service": {
                "()": ServiceFilter,
                "service_name": service,
            }
        },
        "formatters": {
            "json": {
                "format": "%(asctime)s %(levelname)s %(service)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "class": "pythonjsonlogger.jsonlogger.JsonFormatter"
            },
            "console": {
                "format": "%(asctime)s [%(service)s] [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "json" if production else "console",
                "filters": ["service"],
                "stream": sys.stdout
            }
        },
        "loggers": {
            "newsweave": {
                "level": settings.log_level,
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            },
            "sqlalchemy.engine": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            }
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"]
        }
    }

    return config


def setup_logging(service_name: Optional[str] = None) -> None:
    """Configure structured logging using dictConfig."""
    logging.config.dictConfig(get_logging_config(service_name))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
