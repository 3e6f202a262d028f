"""
Logging configuration for Market Data Aggregator.
One dictConfig with a JSON (python-json-logger) or text formatter; module
loggers live under the ``market_data_aggregator`` namespace.
"""

import logging
import logging.config
import sys
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from .config import Settings, settings as default_settings

ROOT_LOGGER = "market_data_aggregator"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")

_FORMATTERS: Dict[str, Dict[str, Any]] = {
    "json": {
        "()": jsonlogger.JsonFormatter,
        "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(module)s %(funcName)s %(lineno)d",
        "rename_fields": {"asctime": "timestamp", "levelname": "level"},
        "datefmt": "%Y-%m-%dT%H:%M:%S%z",
    },
    "standard": {
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        "datefmt": "%Y-%m-%d %H:%M:%S",
    },
    "detailed": {
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s [in %(pathname)s:%(lineno)d]",
        "datefmt": "%Y-%m-%d %H:%M:%S",
    },
}


def setup_logging(config: Optional[Settings] = None) -> None:
    """Apply the logging configuration for the given (or global) settings."""
    config = config or default_settings
    logging.config.dictConfig(build_logging_config(config.log_level, config.log_format))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_logging_config(log_level: str = "INFO", log_format: str = "json") -> Dict[str, Any]:
    """
    Build a dictConfig mapping.

    Text output uses the detailed format, with source locations, at any
    level other than INFO.
    """
    if log_format == "json":
        formatter = "json"
    else:
        formatter = "standard" if log_level == "INFO" else "detailed"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {formatter: _FORMATTERS[formatter]},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout
            }
        },
        "loggers": {
            "": {"handlers": ["console"], "level": "WARNING"},
            ROOT_LOGGER: {"handlers": ["console"], "level": log_level, "propagate": False},
        }
    }


def create_logger(module_name: str) -> logging.Logger:
    """Create a logger for a module under the package namespace."""
    if module_name == ROOT_LOGGER or module_name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(module_name)
    return logging.getLogger(f"{ROOT_LOGGER}.{module_name}")
