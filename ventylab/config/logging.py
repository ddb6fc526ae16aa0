import logging
import logging.config
from typing import Any


def setup_logging(level: str = "INFO") -> dict[str, Any]:
    """Configure logging for the progress client."""
    level = level.upper()
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
        },
        "loggers": {
            # Request lines from the HTTP stack are noise at INFO
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
        },
        "root": {"level": level, "handlers": ["console"]},
    }

    logging.config.dictConfig(config)
    return config
