from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path

from flask import Flask


def setup_logging(app: Flask) -> None:
    handlers: dict[str, dict[str, object]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    }
    log_file = app.config.get("LOG_FILE") or ""
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "default",
            "filename": log_file,
            "maxBytes": 5 * 1024 * 1024,  # 5 MB
            "backupCount": 5,
            "encoding": "utf-8",
        }

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                },
            },
            "handlers": handlers,
            "loggers": {
                "app": {
                    "level": app.config.get("LOG_LEVEL", "INFO"),
                    "handlers": list(handlers),
                    "propagate": True,
                },
            },
        }
    )
