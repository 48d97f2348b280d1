"""Process-wide logging setup.

Modules log through ``logging.getLogger(__name__)``; this module only decides
level and format once at startup. ``LOG_JSON=true`` switches to one JSON
object per line for log shippers.
"""

from __future__ import annotations

import json
import logging

from supportdesk.core.config import Settings

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def configure_logging(settings: Settings) -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(_get_formatter(settings.log_json))

    app_logger = logging.getLogger("supportdesk")
    app_logger.setLevel(settings.log_level.upper())
    app_logger.addHandler(handler)
    app_logger.propagate = False
    _configured = True
