"""Logging configuration for Lambda and CLI entry points."""

import logging
import logging.config
from typing import Optional

from docingest.config import settings

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once per process.

    Lambda installs its own handler on the root logger before our code runs,
    so only the level is adjusted there; everywhere else a stdout handler is
    installed.
    """
    global _configured
    if _configured:
        return

    loglevel = (level or settings.log_level).upper()
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(loglevel)
    else:
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "standard": {
                        "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                        "datefmt": "%Y-%m-%d %H:%M:%S",
                    },
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "formatter": "standard",
                        "level": loglevel,
                        "stream": "ext://sys.stdout",
                    },
                },
                "root": {
                    "handlers": ["console"],
                    "level": loglevel,
                },
            }
        )

    # boto is very chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True
