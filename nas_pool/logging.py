from __future__ import annotations

import json
import logging
from typing import Any, Dict, Union


EXTRA_FIELDS = ("operation", "step", "disk", "exit_code")


class JsonFormatter(logging.Formatter):
    """Render log records as JSON lines with storage operation metadata when available."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - base class contract
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=str)


def init_logging(level: Union[int, str] = logging.INFO) -> logging.Handler:
    """Configure JSON logging on the root logger."""

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Reuse an installed handler so repeated calls do not duplicate logs.
    for handler in root_logger.handlers:
        if isinstance(handler.formatter, JsonFormatter):
            return handler

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    return handler
