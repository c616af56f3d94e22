"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import Config

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, `extra=` fields merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RECORD_ATTRS:
                continue
            payload[key] = value
        return json.dumps(payload, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends `extra=` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _RECORD_ATTRS
        ]
        if extras:
            line = f"{line} | {' '.join(extras)}"
        return line


_REDACT_KEYS = {"authorization", "x-api-key", "cookie"}


def redact_mapping(values: Mapping[str, Any], extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Return a shallow copy of `values` with sensitive keys redacted."""

    redact_keys = _REDACT_KEYS | {key.lower() for key in extra_keys}
    return {
        key: "***REDACTED***" if key.lower() in redact_keys else value
        for key, value in values.items()
    }


def _subsystem_levels(config: Config) -> Dict[str, str]:
    def _level(override: Optional[str]) -> str:
        return (override or config.log_level).upper()

    return {
        "lifx": _level(None),
        "lifx.discovery": _level(config.discovery_log_level),
        "lifx.transport": _level(config.discovery_log_level),
        "lifx.registry": _level(config.registry_log_level),
        "lifx.poller": _level(config.registry_log_level),
        "lifx.cache": _level(None),
        "lifx.db": _level(None),
        "lifx.homekit": _level(config.homekit_log_level),
        "lifx.api": _level(config.api_log_level),
        "lifx.api.middleware": _level(config.api_log_level),
    }


def configure_logging(config: Config) -> None:
    """Configure global logging based on the provided config."""

    level = config.log_level.upper()
    if config.log_format == "json":
        formatter: Dict[str, Any] = {"()": f"{__name__}.JsonFormatter"}
    else:
        formatter = {
            "()": f"{__name__}.ContextFormatter",
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }

    loggers = {
        name: {"level": sub_level, "handlers": ["console"], "propagate": False}
        for name, sub_level in _subsystem_levels(config).items()
    }
    # HAP-python and aiolifx are chatty at INFO.
    loggers["pyhap"] = {"level": "WARNING", "handlers": ["console"], "propagate": False}
    loggers["aiolifx"] = {"level": "WARNING", "handlers": ["console"], "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
